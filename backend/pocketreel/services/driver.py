from __future__ import annotations

import asyncio
import logging
from threading import Thread
from typing import Awaitable, Callable

import httpx

from ..config import settings
from ..errors import InvalidJobStateError, JobNotFoundError
from ..models import Job, JobInput
from ..state import JobStore
from .credit_service import CreditLedger
from .pipeline import ScenePipeline, StepResult, StepState
from .remote import PollResult, RemoteCapability


logger = logging.getLogger(__name__)

TriggerFn = Callable[[str, float], Awaitable[None]]

CONTINUE_STATES: frozenset[str] = frozenset({"submitted", "reclaimed"})
RETRIGGER_STATES: frozenset[str] = frozenset({"scene_complete", "all_scenes_complete", "waiting"})
SETTLE_STATES: frozenset[str] = frozenset({"completed", "failed", "scene_failed"})
STOP_STATES: frozenset[str] = frozenset({"completed", "failed", "scene_failed", "terminal", "conflict"})
MAX_TRANSITIONS_PER_CHUNK = 8


class JobDriver:
    """Moves jobs through the pipeline, either in one loop or one chunk per trigger."""

    def __init__(
        self,
        store: JobStore,
        pipeline: ScenePipeline,
        ledger: CreditLedger,
        mode: str | None = None,
        inline_poll_budget_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        stale_job_seconds: float | None = None,
        callback_backup_poll_seconds: float | None = None,
        claim_lease_seconds: float | None = None,
        public_base_url: str | None = None,
        trigger: TriggerFn | None = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.ledger = ledger
        self.mode = mode or settings.driver_mode
        self.inline_poll_budget_seconds = (
            settings.inline_poll_budget_seconds if inline_poll_budget_seconds is None else inline_poll_budget_seconds
        )
        self.poll_interval_seconds = (
            settings.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self.stale_job_seconds = settings.stale_job_seconds if stale_job_seconds is None else stale_job_seconds
        self.callback_backup_poll_seconds = (
            settings.callback_backup_poll_seconds
            if callback_backup_poll_seconds is None
            else callback_backup_poll_seconds
        )
        self.claim_lease_seconds = settings.claim_lease_seconds if claim_lease_seconds is None else claim_lease_seconds
        base = settings.public_base_url if public_base_url is None else public_base_url
        self.public_base_url = (base or "").strip().rstrip("/") or None
        self.trigger_fn = trigger
        self._tasks: set[asyncio.Task] = set()

    def create_job(self, payload: JobInput, user_id: str = "anonymous") -> Job:
        job = self.store.create(payload, user_id=user_id)
        self.ledger.charge(job)
        logger.info(
            "Job created: job=%s user=%s scenes=%s mode=%s",
            job.job_id,
            job.user_id,
            job.total_scenes,
            self.mode,
        )
        return job

    async def start(self, job_id: str) -> None:
        if self.mode == "monolithic":
            self.spawn_monolithic(job_id)
            return
        await self.trigger(job_id)

    def spawn_monolithic(self, job_id: str) -> Thread:
        def runner() -> None:
            asyncio.run(self.run_to_completion(job_id))

        thread = Thread(target=runner, daemon=True)
        thread.start()
        return thread

    async def run_to_completion(self, job_id: str) -> StepResult:
        while True:
            try:
                outcome = await self.pipeline.step(job_id, self.inline_poll_budget_seconds)
            except JobNotFoundError:
                logger.warning("Job disappeared while running: job=%s", job_id)
                return StepResult("conflict", None, "job not found")
            except Exception:
                logger.exception("Job loop crashed: job=%s", job_id)
                raise
            self._settle(outcome)
            if outcome.state in STOP_STATES:
                return outcome
            if outcome.state in {"waiting", "busy", "awaiting_callback"}:
                await asyncio.sleep(self.poll_interval_seconds)

    async def advance(self, job_id: str) -> StepResult:
        """Run one chunk of work for ``job_id`` and schedule the next one if needed."""
        outcome = await self.pipeline.step(job_id, self.inline_poll_budget_seconds)
        transitions = 1
        while outcome.state in CONTINUE_STATES and transitions < MAX_TRANSITIONS_PER_CHUNK:
            outcome = await self.pipeline.step(job_id, self.inline_poll_budget_seconds)
            transitions += 1

        self._settle(outcome)
        delay = self._next_trigger_delay(outcome.state)
        if delay is not None:
            await self.trigger(job_id, delay)
        logger.info(
            "Advanced job: job=%s state=%s transitions=%s message=%s",
            job_id,
            outcome.state,
            transitions,
            outcome.message,
        )
        return outcome

    def _next_trigger_delay(self, state: str) -> float | None:
        """Delay before the next chunk, or None when this chain of triggers should end."""
        if state == "waiting":
            return self.poll_interval_seconds
        if state == "awaiting_callback":
            # Backup poll so a lost webhook still reaches the operation timeout.
            return self.callback_backup_poll_seconds
        if state == "busy":
            return self.claim_lease_seconds
        if state in RETRIGGER_STATES or state in CONTINUE_STATES:
            return 0.0
        return None

    async def on_talking_head_callback(self, payload: dict) -> StepResult:
        handle, result = self.pipeline.talking_head.parse_webhook(payload)
        return await self._on_callback(self.pipeline.talking_head, handle, result)

    async def on_render_callback(self, payload: dict) -> StepResult:
        render = self.pipeline.composition.render
        handle, result = render.parse_webhook(payload)
        return await self._on_callback(render, handle, result)

    async def _on_callback(self, capability: RemoteCapability, handle: str, result: PollResult) -> StepResult:
        if not handle:
            return StepResult("conflict", None, "callback without a handle")
        outcome = await self.pipeline.apply_callback(capability, handle, result)
        self._settle(outcome)
        if outcome.job is not None and outcome.state in RETRIGGER_STATES | CONTINUE_STATES:
            await self.trigger(outcome.job.job_id)
        logger.info(
            "%s callback: handle=%s state=%s job=%s",
            capability.name,
            handle,
            outcome.state,
            outcome.job.job_id if outcome.job else None,
        )
        return outcome

    async def retry(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != "failed":
            raise InvalidJobStateError(f"job {job_id} is {job.status}, only failed jobs can be retried")

        resumed = self.store.compare_and_set(
            job_id,
            job.version,
            {
                "status": "processing",
                "attempt": job.attempt + 1,
                "pending_operation": None,
                "error_message": None,
                "progress_message": f"Retrying from scene {min(job.current_scene_index + 1, job.total_scenes)}"
                f"/{job.total_scenes}...",
            },
            allow_terminal=True,
        )
        self.ledger.charge(resumed)
        logger.info(
            "Job retry: job=%s attempt=%s cursor=%s/%s",
            job_id,
            resumed.attempt,
            resumed.current_scene_index,
            resumed.total_scenes,
        )
        await self.start(job_id)
        return resumed

    async def restart(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        fresh = self.create_job(job.input, user_id=job.user_id)
        logger.info("Job restart: source=%s new=%s", job_id, fresh.job_id)
        await self.start(fresh.job_id)
        return fresh

    async def resume_stale_jobs(self) -> list[str]:
        stale = self.store.list_stale(self.stale_job_seconds)
        for job in stale:
            logger.info(
                "Resuming stale job: job=%s status=%s cursor=%s/%s",
                job.job_id,
                job.status,
                job.current_scene_index,
                job.total_scenes,
            )
            await self.start(job.job_id)
        return [job.job_id for job in stale]

    async def trigger(self, job_id: str, delay: float = 0.0) -> None:
        if self.trigger_fn is not None:
            await self.trigger_fn(job_id, delay)
            return
        if self.public_base_url:
            coro = self._post_advance(job_id, delay)
        else:
            coro = self._advance_in_process(job_id, delay)
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post_advance(self, job_id: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        url = f"{self.public_base_url}/api/jobs/{job_id}/advance"
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.post(url, json={"jobId": job_id})
                response.raise_for_status()
        except httpx.TimeoutException:
            logger.debug("Advance trigger dispatched without waiting for the chunk: job=%s", job_id)
        except httpx.HTTPError as exc:
            logger.warning("Advance trigger failed: job=%s url=%s error=%s", job_id, url, exc)

    async def _advance_in_process(self, job_id: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self.advance(job_id)
        except JobNotFoundError:
            logger.warning("Advance skipped, job not found: job=%s", job_id)
        except Exception:
            logger.exception("Advance crashed: job=%s", job_id)

    def _settle(self, outcome: StepResult) -> None:
        state: StepState = outcome.state
        if state in SETTLE_STATES and outcome.job is not None and outcome.job.is_terminal:
            self.ledger.settle(outcome.job)
