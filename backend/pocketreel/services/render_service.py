from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import settings
from ..errors import RemoteSubmissionError
from .remote import PollDone, PollFailed, PollPending, PollResult


logger = logging.getLogger(__name__)

KEN_BURNS_EFFECTS: tuple[dict[str, Any], ...] = (
    {"zoom": 4, "fade-in": 0.5, "fade-out": 0.5},
    {"zoom": 3, "pan": "right", "pan-distance": 0.15, "fade-in": 0.4, "fade-out": 0.4},
    {"zoom": -3, "fade-in": 0.5, "fade-out": 0.5},
    {"zoom": 2, "pan": "left", "pan-distance": 0.15, "fade-in": 0.4, "fade-out": 0.4},
    {"zoom": 4, "pan": "top", "pan-distance": 0.12, "fade-in": 0.5, "fade-out": 0.5},
    {"zoom": 5, "pan": "bottom-right", "pan-distance": 0.1, "fade-in": 0.4, "fade-out": 0.4},
    {"zoom": -2, "pan": "bottom", "pan-distance": 0.1, "fade-in": 0.5, "fade-out": 0.5},
    {"zoom": 3, "pan": "top-left", "pan-distance": 0.12, "fade-in": 0.4, "fade-out": 0.4},
)

CAPTION_STYLES: dict[str, dict[str, Any]] = {
    "bold-classic": {
        "style": "classic",
        "font-family": "Bangers",
        "font-size": 150,
        "word-color": "#FFD700",
        "line-color": "#FFFFFF",
        "outline-color": "#000000",
        "outline-width": 2,
        "shadow-color": "#000000",
        "shadow-offset": 5,
        "position": "bottom-center",
        "max-words-per-line": 3,
    },
    "clean-cut": {
        "style": "classic-progressive",
        "font-family": "NotoSans Bold",
        "font-size": 90,
        "word-color": "#000000",
        "line-color": "#555555",
        "outline-color": "#FFFFFF",
        "outline-width": 4,
        "max-words-per-line": 3,
    },
    "modern-pop": {
        "style": "classic-progressive",
        "font-family": "Roboto",
        "font-size": 85,
        "font-weight": "900",
        "word-color": "#FFFF00",
        "line-color": "#FFFFFF",
        "outline-color": "#000000",
        "outline-width": 4,
        "position": "bottom-center",
        "max-words-per-line": 4,
    },
    "minimal": {
        "style": "classic",
        "font-family": "Arial",
        "font-size": 70,
        "word-color": "#FFFFFF",
        "line-color": "#FFFFFF",
        "outline-color": "#000000",
        "outline-width": 2,
        "position": "bottom-center",
        "max-words-per-line": 5,
    },
    "vibrant": {
        "style": "boxed-line",
        "font-family": "Oswald Bold",
        "font-size": 95,
        "word-color": "#FFD700",
        "box-color": "#FF4500DD",
        "position": "bottom-center",
        "max-words-per-line": 3,
        "all-caps": True,
    },
}

OUTPUT_SIZES: dict[str, tuple[int, int]] = {
    "9:16": (1080, 1920),
    "16:9": (1920, 1080),
    "1:1": (1080, 1080),
}


@dataclass(frozen=True)
class RenderScene:
    clip_url: str
    duration_seconds: float
    has_embedded_audio: bool
    audio_url: str | None = None


@dataclass(frozen=True)
class RenderRequest:
    movie: dict[str, Any]
    webhook_url: str | None = None


@dataclass(frozen=True)
class RenderResult:
    video_url: str
    duration_seconds: float | None = None


def ken_burns_effect(scene_index: int) -> dict[str, Any]:
    return dict(KEN_BURNS_EFFECTS[scene_index % len(KEN_BURNS_EFFECTS)])


def caption_settings(style_name: str) -> dict[str, Any]:
    return dict(CAPTION_STYLES.get(style_name) or CAPTION_STYLES["bold-classic"])


def build_movie(
    scenes: list[RenderScene],
    *,
    aspect_ratio: str = "9:16",
    captions_srt: str | None = None,
    caption_style: str = "bold-classic",
    background_music_url: str | None = None,
    transition_sound_url: str | None = None,
) -> dict[str, Any]:
    """Convert ordered scenes into a JSON2Video movie document.

    Talking-head clips carry their own audio and become video elements.
    Static assets become Ken Burns images with the narration overlaid.
    """
    movie_scenes: list[dict[str, Any]] = []
    for index, scene in enumerate(scenes):
        elements: list[dict[str, Any]] = []
        if scene.has_embedded_audio:
            elements.append({"type": "video", "src": scene.clip_url, "resize": "cover", "media-duration": "exact"})
        else:
            elements.append({"type": "image", "src": scene.clip_url, "resize": "cover", **ken_burns_effect(index)})
            if scene.audio_url:
                elements.append({"type": "audio", "src": scene.audio_url, "start": 0, "duration": -1, "volume": 1})

        if transition_sound_url:
            elements.append({"type": "audio", "src": transition_sound_url, "start": 0, "volume": 0.4})

        movie_scenes.append(
            {
                "comment": f"Scene {index + 1}",
                "duration": round(scene.duration_seconds, 3),
                "elements": elements,
            }
        )

    movie_elements: list[dict[str, Any]] = []
    if background_music_url:
        movie_elements.append(
            {
                "type": "audio",
                "src": background_music_url,
                "start": 0,
                "duration": -2,
                "volume": 0.12,
                "loop": -1,
                "fade-in": 1,
                "fade-out": 2,
            }
        )
    if captions_srt:
        movie_elements.append(
            {
                "type": "subtitles",
                "language": "auto",
                "captions": captions_srt,
                "settings": caption_settings(caption_style),
            }
        )

    width, height = OUTPUT_SIZES.get(aspect_ratio, OUTPUT_SIZES["9:16"])
    return {
        "resolution": "custom",
        "width": width,
        "height": height,
        "quality": "high",
        "fps": 30,
        "draft": False,
        "scenes": movie_scenes,
        "elements": movie_elements,
    }


def _parse_status(body: dict[str, Any]) -> PollResult:
    movie = body.get("movie")
    if isinstance(movie, dict):
        status = str(movie.get("status") or "").lower()
        if status == "done":
            video_url = str(movie.get("url") or "").strip()
            if not video_url:
                return PollFailed("render finished without a video URL")
            return PollDone(RenderResult(video_url=video_url, duration_seconds=_float_or_none(movie.get("duration"))))
        if status == "error":
            return PollFailed(f"render failed: {str(movie.get('message') or 'unknown error')[:300]}")
        return PollPending(status or "processing")

    status = str(body.get("status") or "").lower()
    if status == "done" and isinstance(movie, str) and movie.strip():
        return PollDone(RenderResult(video_url=movie.strip(), duration_seconds=_float_or_none(body.get("duration"))))
    if status == "error":
        return PollFailed(f"render failed: {str(body.get('message') or 'unknown error')[:300]}")
    return PollPending(status or "processing")


def _float_or_none(value: object) -> float | None:
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


class RenderClient:
    name = "render"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.json2video_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.json2video_api_url).rstrip("/")
        self.transport = transport

    async def invoke(self, request: RenderRequest) -> str:
        if not self.api_key:
            raise RemoteSubmissionError("JSON2VIDEO_API_KEY is not configured")

        payload = dict(request.movie)
        if request.webhook_url:
            payload["exports"] = [{"destinations": [{"type": "webhook", "endpoint": request.webhook_url}]}]
        try:
            async with httpx.AsyncClient(timeout=60, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/movies",
                    headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise RemoteSubmissionError(
                f"render request rejected: HTTP {exc.response.status_code} {(exc.response.text or '')[:300]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RemoteSubmissionError(f"render submission failed: {exc}") from exc

        project_id = str((data if isinstance(data, dict) else {}).get("project") or "").strip()
        if not project_id:
            raise RemoteSubmissionError(f"render service returned no project id: {str(data)[:300]}")
        logger.info("Render started: project=%s scenes=%s", project_id, len(payload.get("scenes") or []))
        return project_id

    async def poll(self, handle: str) -> PollResult:
        try:
            async with httpx.AsyncClient(timeout=15, transport=self.transport) as client:
                response = await client.get(
                    f"{self.base_url}/movies",
                    headers={"x-api-key": self.api_key},
                    params={"project": handle},
                )
                if response.status_code >= 400:
                    return PollPending(f"HTTP {response.status_code}")
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Render poll error (will retry): project=%s error=%s", handle, exc)
            return PollPending("connection error")
        if not isinstance(body, dict):
            return PollPending("unexpected status body")
        return _parse_status(body)

    def parse_webhook(self, payload: dict) -> tuple[str, PollResult]:
        project_id = str(payload.get("project") or "").strip()
        video_url = str(payload.get("url") or "").strip()
        success = payload.get("success")
        if success is False or (not video_url and payload.get("message")):
            return project_id, PollFailed(f"render failed: {str(payload.get('message') or 'unknown error')[:300]}")
        if not video_url:
            return project_id, PollPending("callback without video URL")
        return project_id, PollDone(
            RenderResult(video_url=video_url, duration_seconds=_float_or_none(payload.get("duration")))
        )
