from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

from ..config import callback_base_url, settings
from ..errors import JobConflictError, JobNotFoundError, RemoteSubmissionError
from ..models import Job, NarrationResult, PendingOperation, SceneResult, StaticAssetScene
from ..state import JobStore
from .composition import CompositionStage
from .image_service import ImageClient, ImageResult, scene_image_request
from .remote import (
    CallbackCapability,
    PollDone,
    PollFailed,
    PollPending,
    PollResult,
    RemoteCapability,
    wait_for_result,
)
from .render_service import RenderClient, RenderResult
from .talking_head_service import ClipResult, TalkingHeadClient, TalkingHeadRequest
from .transcription_service import TranscriptionClient
from .tts_service import NarrationClient, SpeechRequest


logger = logging.getLogger(__name__)

StepState = Literal[
    "submitted",
    "waiting",
    "awaiting_callback",
    "scene_complete",
    "all_scenes_complete",
    "scene_failed",
    "completed",
    "failed",
    "conflict",
    "busy",
    "reclaimed",
    "terminal",
]

PROGRESS_SETUP_FLOOR = 10
PROGRESS_SCENE_SPAN = 70
PROGRESS_COMPOSING = 80
PROGRESS_RENDERING = 85


@dataclass(frozen=True)
class StepResult:
    state: StepState
    job: Job | None = None
    message: str = ""


def scene_progress(scene_index: int, total_scenes: int) -> int:
    """Progress after scene ``scene_index`` (0-based) has been appended."""
    if total_scenes <= 0:
        return PROGRESS_SETUP_FLOOR
    return int(math.floor(PROGRESS_SETUP_FLOOR + (scene_index + 1) / total_scenes * PROGRESS_SCENE_SPAN))


def _one_line(reason: str, limit: int = 500) -> str:
    text = " ".join(str(reason or "unknown error").split())
    return text[:limit]


class ScenePipeline:
    """Durable scene state machine: every call performs at most one transition."""

    def __init__(
        self,
        store: JobStore,
        narration: RemoteCapability,
        talking_head: CallbackCapability,
        image: RemoteCapability,
        composition: CompositionStage,
        callback_base: str | None = None,
        poll_interval_seconds: float | None = None,
        operation_timeout_seconds: float | None = None,
        claim_lease_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.narration = narration
        self.talking_head = talking_head
        self.image = image
        self.composition = composition
        self.callback_base = callback_base
        self.poll_interval_seconds = (
            settings.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self.operation_timeout_seconds = (
            settings.operation_timeout_seconds if operation_timeout_seconds is None else operation_timeout_seconds
        )
        self.claim_lease_seconds = settings.claim_lease_seconds if claim_lease_seconds is None else claim_lease_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, store: JobStore, use_callbacks: bool = True) -> "ScenePipeline":
        return cls(
            store=store,
            narration=NarrationClient(),
            talking_head=TalkingHeadClient(),
            image=ImageClient(),
            composition=CompositionStage(render=RenderClient(), transcription=TranscriptionClient()),
            callback_base=callback_base_url() if use_callbacks else None,
        )

    async def step(self, job_id: str, poll_budget_seconds: float = 0.0) -> StepResult:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.is_terminal:
            return StepResult("terminal", job, f"job already {job.status}")

        if job.pending_operation is not None:
            return await self._resume_pending(job, job.pending_operation, poll_budget_seconds)
        if job.current_scene_index >= job.total_scenes:
            return await self._start_render(job)
        return await self._start_narration(job)

    async def apply_callback(self, capability: RemoteCapability, handle: str, result: PollResult) -> StepResult:
        """Feed a webhook-delivered result into the same transition as an inline poll."""
        job = self.store.find_by_pending_handle(handle)
        if job is None:
            return StepResult("conflict", None, f"no job is waiting on {capability.name} handle {handle}")
        if job.is_terminal:
            return StepResult("terminal", job, f"job already {job.status}")
        pending = job.pending_operation
        if pending is None or self._capability_for(job, pending) is not capability:
            return StepResult("conflict", job, f"job is not waiting on {capability.name}")
        if isinstance(result, PollPending):
            return StepResult("awaiting_callback", job, result.detail)
        return await self._apply_result(job, pending, result)

    def _write(self, job: Job, changes: dict[str, Any]) -> Job | None:
        try:
            return self.store.compare_and_set(job.job_id, job.version, changes)
        except JobConflictError as exc:
            logger.info("Skipped stale write for job %s: %s", job.job_id, exc)
            return None

    def _claim(self, job: Job, pending: PendingOperation, changes: dict[str, Any]) -> Job | None:
        return self._write(job, {"status": "processing", "pending_operation": pending, **changes})

    async def _submit(
        self,
        claimed: Job,
        pending: PendingOperation,
        capability: RemoteCapability,
        request: Any,
        failure_state: StepState,
    ) -> StepResult:
        try:
            handle = await capability.invoke(request)
        except RemoteSubmissionError as exc:
            logger.warning(
                "%s submission rejected: job=%s scene=%s error=%s",
                capability.name,
                claimed.job_id,
                pending.scene_index,
                exc,
            )
            return self._fail(claimed, self._failure_reason(claimed, pending, str(exc)), failure_state)

        updated = self._write(claimed, {"pending_operation": pending.model_copy(update={"handle": handle})})
        if updated is None:
            return StepResult("conflict", claimed, f"claim for {capability.name} was lost")
        logger.info(
            "Submitted %s: job=%s scene=%s handle=%s",
            capability.name,
            claimed.job_id,
            pending.scene_index,
            handle,
        )
        return StepResult("submitted", updated, f"{capability.name} submitted")

    async def _start_narration(self, job: Job) -> StepResult:
        index = job.current_scene_index
        scene = job.input.scenes[index]
        pending = PendingOperation(kind="narration", scene_index=index, started_at=self.clock())
        claimed = self._claim(
            job,
            pending,
            {"progress_message": f"Generating narration for scene {index + 1}/{job.total_scenes}..."},
        )
        if claimed is None:
            return StepResult("conflict", job, "another invocation is advancing this job")
        return await self._submit(
            claimed,
            pending,
            self.narration,
            SpeechRequest(text=scene.text, voice_id=job.input.voice_id),
            "scene_failed",
        )

    async def _start_visual(self, job: Job, narration: NarrationResult) -> StepResult:
        index = job.current_scene_index
        scene = job.input.scenes[index]

        if isinstance(scene, StaticAssetScene) and not self._needs_generated_image(job, scene):
            clip_url = (scene.asset_url or "").strip() or (job.input.identity_image_url or "").strip()
            return self._complete_scene(job, clip_url, narration)

        if scene.kind == "talking_head":
            webhook_url = f"{self.callback_base}/api/webhooks/talking-head" if self.callback_base else None
            capability = self.talking_head
            request: Any = TalkingHeadRequest(
                image_url=str(job.input.identity_image_url),
                audio_url=narration.audio_url,
                webhook_url=webhook_url,
            )
            message = f"Animating talking head for scene {index + 1}/{job.total_scenes}..."
        else:
            webhook_url = None
            capability = self.image
            request = scene_image_request(scene.image_prompt, scene.text, job.input.aspect_ratio)
            message = f"Generating image for scene {index + 1}/{job.total_scenes}..."

        pending = PendingOperation(
            kind="visual",
            scene_index=index,
            started_at=self.clock(),
            narration=narration,
            callback=webhook_url is not None,
        )
        claimed = self._claim(job, pending, {"progress_message": message})
        if claimed is None:
            return StepResult("conflict", job, "another invocation is advancing this job")
        return await self._submit(claimed, pending, capability, request, "scene_failed")

    async def _start_render(self, job: Job) -> StepResult:
        webhook_url = f"{self.callback_base}/api/webhooks/render-complete" if self.callback_base else None
        pending = PendingOperation(
            kind="render",
            scene_index=job.total_scenes,
            started_at=self.clock(),
            callback=webhook_url is not None,
        )
        claimed = self._claim(
            job,
            pending,
            {"progress_percent": PROGRESS_COMPOSING, "progress_message": "Composing final video..."},
        )
        if claimed is None:
            return StepResult("conflict", job, "another invocation is advancing this job")

        current = claimed

        def renew_claim() -> bool:
            nonlocal current, pending
            pending = pending.model_copy(update={"started_at": self.clock()})
            renewed = self._write(current, {"pending_operation": pending})
            if renewed is None:
                return False
            current = renewed
            return True

        try:
            handle = await self.composition.submit(claimed, webhook_url=webhook_url, heartbeat=renew_claim)
        except JobConflictError as exc:
            logger.warning("Render claim lost: job=%s error=%s", claimed.job_id, exc)
            return StepResult("conflict", current, "claim for render was lost")
        except RemoteSubmissionError as exc:
            logger.warning("Render submission rejected: job=%s error=%s", claimed.job_id, exc)
            return self._fail(current, f"Composition failed: {_one_line(str(exc))}", "failed")

        updated = self._write(
            current,
            {
                "pending_operation": pending.model_copy(update={"handle": handle}),
                "progress_percent": PROGRESS_RENDERING,
                "progress_message": "Rendering final video...",
            },
        )
        if updated is None:
            return StepResult("conflict", current, "claim for render was lost")
        logger.info("Render submitted: job=%s handle=%s", claimed.job_id, handle)
        return StepResult("submitted", updated, "render submitted")

    async def _resume_pending(self, job: Job, pending: PendingOperation, poll_budget_seconds: float) -> StepResult:
        age = self.clock() - pending.started_at
        if pending.handle is None:
            if age < self.claim_lease_seconds:
                return StepResult("busy", job, f"{pending.kind} for scene {pending.scene_index + 1} is being submitted")
            cleared = self._write(job, {"pending_operation": None})
            if cleared is None:
                return StepResult("conflict", job, "claim changed while reclaiming")
            logger.warning(
                "Reclaimed expired %s claim: job=%s scene=%s age=%.0fs",
                pending.kind,
                job.job_id,
                pending.scene_index,
                age,
            )
            return StepResult("reclaimed", cleared, "expired claim released")

        capability = self._capability_for(job, pending)
        if pending.callback:
            result = await capability.poll(pending.handle)
        else:
            result = await wait_for_result(capability, pending.handle, poll_budget_seconds, self.poll_interval_seconds)

        if isinstance(result, PollPending):
            age = self.clock() - pending.started_at
            if age > self.operation_timeout_seconds:
                failure_state: StepState = "failed" if pending.kind == "render" else "scene_failed"
                reason = f"{capability.name} timed out after {self.operation_timeout_seconds:.0f}s"
                return self._fail(job, self._failure_reason(job, pending, reason), failure_state)
            state: StepState = "awaiting_callback" if pending.callback else "waiting"
            return StepResult(state, job, result.detail or f"{capability.name} still running")

        return await self._apply_result(job, pending, result)

    async def _apply_result(self, job: Job, pending: PendingOperation, result: PollResult) -> StepResult:
        if isinstance(result, PollFailed):
            failure_state: StepState = "failed" if pending.kind == "render" else "scene_failed"
            return self._fail(job, self._failure_reason(job, pending, result.reason), failure_state)

        if isinstance(result, PollPending):
            return StepResult("waiting", job, result.detail)
        payload = result.payload

        if pending.kind == "narration":
            if pending.scene_index != job.current_scene_index:
                return StepResult("conflict", job, "narration result does not match the scene cursor")
            return await self._start_visual(job, payload)

        if pending.kind == "visual":
            if pending.narration is None:
                return self._fail(job, self._failure_reason(job, pending, "narration missing"), "scene_failed")
            if isinstance(payload, ClipResult):
                clip_url = payload.video_url
            elif isinstance(payload, ImageResult):
                clip_url = payload.image_url
            else:
                clip_url = str(payload)
            return self._complete_scene(job, clip_url, pending.narration)

        render_result = payload if isinstance(payload, RenderResult) else RenderResult(video_url=str(payload))
        updated = self._write(job, self.composition.completion_changes(job, render_result))
        if updated is None:
            return StepResult("conflict", job, "job changed while recording the render")
        logger.info(
            "Job completed: job=%s video=%s duration=%.3fs",
            job.job_id,
            updated.result_video_url,
            updated.result_duration or 0.0,
        )
        return StepResult("completed", updated, "video ready")

    def _complete_scene(self, job: Job, clip_url: str, narration: NarrationResult) -> StepResult:
        index = job.current_scene_index
        if any(item.scene_index == index for item in job.completed_scenes):
            return StepResult("conflict", job, f"scene {index + 1} already recorded")
        scene = job.input.scenes[index]
        total = job.total_scenes
        record = SceneResult(
            scene_index=index,
            kind=scene.kind,
            clip_url=clip_url,
            audio_url=narration.audio_url,
            duration_seconds=narration.duration_seconds,
            text=scene.text,
        )
        updated = self._write(
            job,
            {
                "status": "processing",
                "completed_scenes": [*job.completed_scenes, record],
                "current_scene_index": index + 1,
                "pending_operation": None,
                "progress_percent": scene_progress(index, total),
                "progress_message": f"Scene {index + 1}/{total} complete",
            },
        )
        if updated is None:
            return StepResult("conflict", job, "job changed while recording the scene")
        logger.info(
            "Scene complete: job=%s scene=%s/%s kind=%s duration=%.3fs",
            job.job_id,
            index + 1,
            total,
            scene.kind,
            narration.duration_seconds,
        )
        state: StepState = "all_scenes_complete" if index + 1 >= total else "scene_complete"
        return StepResult(state, updated, f"scene {index + 1} complete")

    def _fail(self, job: Job, reason: str, state: StepState) -> StepResult:
        message = _one_line(reason)
        updated = self._write(
            job,
            {
                "status": "failed",
                "pending_operation": None,
                "error_message": message,
                "progress_message": message,
            },
        )
        if updated is None:
            return StepResult("conflict", job, "job changed while recording the failure")
        logger.error("Job failed: job=%s reason=%s", job.job_id, message)
        return StepResult(state, updated, message)

    def _needs_generated_image(self, job: Job, scene: StaticAssetScene) -> bool:
        if (scene.asset_url or "").strip():
            return False
        return bool((scene.image_prompt or "").strip()) or not (job.input.identity_image_url or "").strip()

    def _capability_for(self, job: Job, pending: PendingOperation) -> RemoteCapability:
        if pending.kind == "narration":
            return self.narration
        if pending.kind == "render":
            return self.composition.render
        scene = job.input.scenes[pending.scene_index]
        return self.talking_head if scene.kind == "talking_head" else self.image

    def _failure_reason(self, job: Job, pending: PendingOperation, reason: str) -> str:
        if pending.kind == "render":
            return f"Composition failed: {_one_line(reason)}"
        return f"Scene {pending.scene_index + 1}/{job.total_scenes} {pending.kind} failed: {_one_line(reason)}"
