from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol, Union


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollPending:
    detail: str = ""


@dataclass(frozen=True)
class PollDone:
    payload: Any


@dataclass(frozen=True)
class PollFailed:
    reason: str


PollResult = Union[PollPending, PollDone, PollFailed]


class RemoteCapability(Protocol):
    name: str

    async def invoke(self, request: Any) -> str: ...

    async def poll(self, handle: str) -> PollResult: ...


class CallbackCapability(RemoteCapability, Protocol):
    def parse_webhook(self, payload: dict) -> tuple[str, PollResult]: ...


async def wait_for_result(
    capability: RemoteCapability,
    handle: str,
    budget_seconds: float,
    interval_seconds: float,
) -> PollResult:
    deadline = time.monotonic() + max(0.0, budget_seconds)
    while True:
        result = await capability.poll(handle)
        if not isinstance(result, PollPending):
            return result
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return result
        await asyncio.sleep(min(max(interval_seconds, 0.0), remaining))


async def run(
    capability: RemoteCapability,
    request: Any,
    budget_seconds: float,
    interval_seconds: float,
) -> PollResult:
    handle = await capability.invoke(request)
    result = await wait_for_result(capability, handle, budget_seconds, interval_seconds)
    if isinstance(result, PollPending):
        logger.warning("%s handle=%s still pending after %.0fs", capability.name, handle, budget_seconds)
        return PollFailed(f"{capability.name} timed out after {budget_seconds:.0f}s")
    return result
