from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from ..config import settings
from ..errors import JobConflictError, RemoteSubmissionError
from ..models import Job, SceneResult
from .remote import CallbackCapability, PollDone, RemoteCapability, run
from .render_service import RenderRequest, RenderResult, RenderScene, build_movie
from .transcription_service import TranscriptionRequest, WordTiming


logger = logging.getLogger(__name__)

SRT_WORDS_PER_PHRASE = 4


@dataclass(frozen=True)
class CaptionCue:
    text: str
    start: float
    end: float


@dataclass
class CompositionRequest:
    scenes: list[SceneResult]
    aspect_ratio: str = "9:16"
    enable_captions: bool = True
    caption_style: str = "bold-classic"
    background_music_url: str | None = None
    transition_sound_url: str | None = None
    word_timings: dict[int, list[WordTiming]] = field(default_factory=dict)

    @property
    def total_duration(self) -> float:
        return round(sum(scene.duration_seconds for scene in self.scenes), 3)


def build_composition_request(job: Job) -> CompositionRequest:
    payload = job.input
    music_url = None
    if payload.enable_background_music:
        music_url = (payload.background_music_url or "").strip() or settings.background_music_url
    return CompositionRequest(
        scenes=sorted(job.completed_scenes, key=lambda item: item.scene_index),
        aspect_ratio=payload.aspect_ratio,
        enable_captions=payload.enable_captions,
        caption_style=payload.caption_style,
        background_music_url=music_url,
        transition_sound_url=settings.transition_sound_url or None,
    )


def scene_offsets(scenes: list[SceneResult]) -> list[float]:
    """Start time of every scene: the running sum of the measured durations before it."""
    offsets: list[float] = []
    cursor = 0.0
    for scene in scenes:
        offsets.append(round(cursor, 6))
        cursor += scene.duration_seconds
    return offsets


def _proportional_words(text: str, duration: float) -> list[WordTiming]:
    words = [item for item in re.split(r"\s+", text.strip()) if item]
    if not words:
        return []

    safe_duration = max(duration, 0.1)
    weights = [max(1, len(item)) for item in words]
    total_weight = sum(weights)

    timeline: list[WordTiming] = []
    cursor = 0.0
    for index, word in enumerate(words):
        if index == len(words) - 1:
            end_time = safe_duration
        else:
            end_time = min(safe_duration, cursor + (safe_duration * weights[index] / total_weight))
        timeline.append(WordTiming(word=word, start=cursor, end=end_time))
        cursor = end_time
    return timeline


def caption_track(
    scenes: list[SceneResult],
    word_timings: dict[int, list[WordTiming]] | None = None,
) -> list[CaptionCue]:
    word_timings = word_timings or {}
    cues: list[CaptionCue] = []
    for scene, offset in zip(scenes, scene_offsets(scenes)):
        words = word_timings.get(scene.scene_index) or _proportional_words(scene.text, scene.duration_seconds)
        for word in words:
            start = min(word.start, scene.duration_seconds)
            end = min(max(word.end, start), scene.duration_seconds)
            cues.append(CaptionCue(text=word.word, start=round(offset + start, 3), end=round(offset + end, 3)))
    return cues


def format_srt_time(seconds: float) -> str:
    total_ms = int(round(max(seconds, 0.0) * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def to_srt(cues: list[CaptionCue], words_per_phrase: int = SRT_WORDS_PER_PHRASE) -> str:
    size = max(1, words_per_phrase)
    blocks: list[str] = []
    for number, start_at in enumerate(range(0, len(cues), size), start=1):
        phrase = cues[start_at : start_at + size]
        text = " ".join(cue.text for cue in phrase)
        blocks.append(
            f"{number}\n{format_srt_time(phrase[0].start)} --> {format_srt_time(phrase[-1].end)}\n{text}\n"
        )
    return "\n".join(blocks)


def build_render_request(request: CompositionRequest, webhook_url: str | None = None) -> RenderRequest:
    captions_srt = None
    if request.enable_captions:
        captions_srt = to_srt(caption_track(request.scenes, request.word_timings)) or None
    movie = build_movie(
        [
            RenderScene(
                clip_url=scene.clip_url,
                duration_seconds=scene.duration_seconds,
                has_embedded_audio=scene.has_embedded_audio,
                audio_url=None if scene.has_embedded_audio else scene.audio_url,
            )
            for scene in request.scenes
        ],
        aspect_ratio=request.aspect_ratio,
        captions_srt=captions_srt,
        caption_style=request.caption_style,
        background_music_url=request.background_music_url,
        transition_sound_url=request.transition_sound_url,
    )
    return RenderRequest(movie=movie, webhook_url=webhook_url)


class CompositionStage:
    def __init__(
        self,
        render: CallbackCapability,
        transcription: RemoteCapability | None = None,
        word_timing: bool | None = None,
        transcription_budget_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> None:
        self.render = render
        self.transcription = transcription
        self.word_timing = settings.caption_word_timing if word_timing is None else word_timing
        self.transcription_budget_seconds = (
            settings.transcription_budget_seconds
            if transcription_budget_seconds is None
            else transcription_budget_seconds
        )
        self.poll_interval_seconds = (
            settings.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )

    async def _transcribe(self, scene: SceneResult) -> list[WordTiming]:
        try:
            result = await run(
                self.transcription,
                TranscriptionRequest(audio_url=str(scene.audio_url)),
                self.transcription_budget_seconds,
                self.poll_interval_seconds,
            )
        except RemoteSubmissionError:
            logger.warning(
                "Transcription failed for scene %s, using proportional caption timing",
                scene.scene_index,
                exc_info=True,
            )
            return []
        if isinstance(result, PollDone) and result.payload.words:
            return list(result.payload.words)
        logger.warning("No word timings for scene %s, using proportional caption timing", scene.scene_index)
        return []

    async def _collect_word_timings(
        self,
        scenes: list[SceneResult],
        heartbeat: Callable[[], bool] | None = None,
    ) -> dict[int, list[WordTiming]]:
        """Transcribe scenes one by one; ``heartbeat`` renews the caller's claim after each of them."""
        timings: dict[int, list[WordTiming]] = {}
        if self.transcription is None:
            return timings
        for scene in scenes:
            if not scene.audio_url:
                continue
            words = await self._transcribe(scene)
            if heartbeat is not None and not heartbeat():
                raise JobConflictError(f"render claim lost while transcribing scene {scene.scene_index + 1}")
            if words:
                timings[scene.scene_index] = words
        return timings

    async def submit(
        self,
        job: Job,
        webhook_url: str | None = None,
        heartbeat: Callable[[], bool] | None = None,
    ) -> str:
        request = build_composition_request(job)
        if request.enable_captions and self.word_timing:
            request.word_timings = await self._collect_word_timings(request.scenes, heartbeat)
        render_request = build_render_request(request, webhook_url=webhook_url)
        logger.info(
            "Submitting composition: job=%s scenes=%s duration=%.3fs captions=%s music=%s",
            job.job_id,
            len(request.scenes),
            request.total_duration,
            request.enable_captions,
            bool(request.background_music_url),
        )
        return await self.render.invoke(render_request)

    def completion_changes(self, job: Job, result: RenderResult) -> dict[str, Any]:
        measured = build_composition_request(job).total_duration
        duration = result.duration_seconds if result.duration_seconds else measured
        return {
            "status": "completed",
            "pending_operation": None,
            "progress_percent": 100,
            "progress_message": "Video ready!",
            "result_video_url": result.video_url,
            "result_duration": round(float(duration), 3),
            "error_message": None,
        }
