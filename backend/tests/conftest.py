from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="pocketreel_tests_"))
os.environ["JOBS_DB_PATH"] = str(_RUNTIME_DIR / "jobs.db")
os.environ["LOG_DIR"] = str(_RUNTIME_DIR / "logs")
os.environ["TEMP_DIR"] = str(_RUNTIME_DIR / "temp")
os.environ["PUBLIC_BASE_URL"] = ""
os.environ["DRIVER_MODE"] = "chunked"
os.environ["CAPTION_WORD_TIMING"] = "false"

import pytest  # noqa: E402

from pocketreel.errors import RemoteSubmissionError  # noqa: E402
from pocketreel.models import JobInput, NarrationResult  # noqa: E402
from pocketreel.services.composition import CompositionStage  # noqa: E402
from pocketreel.services.credit_service import CreditLedger  # noqa: E402
from pocketreel.services.image_service import ImageResult  # noqa: E402
from pocketreel.services.pipeline import ScenePipeline  # noqa: E402
from pocketreel.services.remote import PollDone, PollFailed, PollPending, PollResult  # noqa: E402
from pocketreel.services.render_service import RenderResult  # noqa: E402
from pocketreel.services.talking_head_service import ClipResult  # noqa: E402
from pocketreel.state import JobStore  # noqa: E402


IDENTITY_URL = "https://assets.example.com/identity.png"
SCENE_DURATIONS = {
    "Welcome to the channel.": 3.2,
    "Here is the product up close.": 4.7,
    "Thanks for watching, see you soon.": 2.9,
}


@dataclass
class FakeCapability:
    """In-memory remote capability: scripted responses, counted calls."""

    name: str
    respond: Callable[[Any], PollResult]
    pending_polls: int = 0
    reject: Callable[[Any], str | None] | None = None
    invocations: list[Any] = field(default_factory=list)
    polls: list[str] = field(default_factory=list)
    _requests: dict[str, Any] = field(default_factory=dict)
    _poll_counts: dict[str, int] = field(default_factory=dict)

    async def invoke(self, request: Any) -> str:
        self.invocations.append(request)
        await asyncio.sleep(0)
        reason = self.reject(request) if self.reject else None
        if reason:
            raise RemoteSubmissionError(reason)
        handle = f"{self.name}-{len(self.invocations)}"
        self._requests[handle] = request
        return handle

    async def poll(self, handle: str) -> PollResult:
        self.polls.append(handle)
        seen = self._poll_counts.get(handle, 0)
        self._poll_counts[handle] = seen + 1
        if seen < self.pending_polls:
            return PollPending("running")
        return self.respond(self._requests[handle])


@dataclass
class FakeCallbackCapability(FakeCapability):
    decode: Callable[[dict], Any] = lambda payload: payload

    def parse_webhook(self, payload: dict) -> tuple[str, PollResult]:
        handle = str(payload.get("id") or "")
        if not handle:
            return handle, PollPending("no handle")
        if payload.get("error"):
            return handle, PollFailed(str(payload["error"]))
        return handle, PollDone(self.decode(payload))


@dataclass
class Fakes:
    narration: FakeCapability
    talking_head: FakeCallbackCapability
    image: FakeCapability
    render: FakeCallbackCapability
    transcription: FakeCapability


def _narrate(request: Any) -> PollResult:
    slug = abs(hash(request.text)) % 100000
    return PollDone(
        NarrationResult(
            audio_url=f"https://audio.example.com/{slug}.mp3",
            duration_seconds=SCENE_DURATIONS.get(request.text, 3.0),
        )
    )


def make_fakes() -> Fakes:
    clip_counter = {"n": 0}

    def animate(request: Any) -> PollResult:
        clip_counter["n"] += 1
        return PollDone(ClipResult(video_url=f"https://clips.example.com/clip_{clip_counter['n']}.mp4"))

    return Fakes(
        narration=FakeCapability("narration", _narrate),
        talking_head=FakeCallbackCapability(
            "talking_head",
            animate,
            decode=lambda payload: ClipResult(video_url=payload["url"]),
        ),
        image=FakeCapability("image", lambda request: PollDone(ImageResult(image_url="https://img.example.com/still.png"))),
        render=FakeCallbackCapability(
            "render",
            lambda request: PollDone(RenderResult(video_url="https://render.example.com/final.mp4")),
            decode=lambda payload: RenderResult(video_url=payload["url"]),
        ),
        transcription=FakeCapability("transcription", lambda request: PollFailed("not used")),
    )


def make_pipeline(store: JobStore, fakes: Fakes, **overrides: Any) -> ScenePipeline:
    options: dict[str, Any] = {
        "poll_interval_seconds": 0.0,
        "operation_timeout_seconds": 300.0,
        "claim_lease_seconds": 120.0,
    }
    options.update(overrides)
    return ScenePipeline(
        store=store,
        narration=fakes.narration,
        talking_head=fakes.talking_head,
        image=fakes.image,
        composition=CompositionStage(
            render=fakes.render,
            transcription=fakes.transcription,
            word_timing=False,
            poll_interval_seconds=0.0,
        ),
        **options,
    )


def scenario_a_input(**overrides: Any) -> JobInput:
    payload: dict[str, Any] = {
        "scenes": [
            {"kind": "talking_head", "text": "Welcome to the channel."},
            {
                "kind": "static_asset",
                "text": "Here is the product up close.",
                "asset_url": "https://assets.example.com/product.jpg",
            },
            {"kind": "talking_head", "text": "Thanks for watching, see you soon."},
        ],
        "voice_id": "Wise_Woman",
        "identity_image_url": IDENTITY_URL,
        "enable_captions": True,
        "enable_background_music": True,
    }
    payload.update(overrides)
    return JobInput.model_validate(payload)


def static_input(count: int) -> JobInput:
    return JobInput.model_validate(
        {
            "scenes": [
                {"kind": "static_asset", "text": f"Scene number {index}.", "asset_url": f"https://a.example.com/{index}.jpg"}
                for index in range(count)
            ],
            "voice_id": "Wise_Woman",
        }
    )


@pytest.fixture()
def store(tmp_path: Path) -> JobStore:
    return JobStore(db_path=tmp_path / "jobs.db")


@pytest.fixture()
def ledger(tmp_path: Path) -> CreditLedger:
    return CreditLedger(db_path=tmp_path / "jobs.db")


@pytest.fixture()
def fakes() -> Fakes:
    return make_fakes()
