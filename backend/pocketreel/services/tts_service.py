from __future__ import annotations

import logging
import tempfile
import wave
from dataclasses import dataclass
from pathlib import Path

import httpx
from mutagen import File as MutagenFile

from ..config import project_path, settings
from ..errors import RemoteSubmissionError
from ..models import NarrationResult
from .fal_client import FalQueueClient
from .remote import PollDone, PollFailed, PollPending, PollResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeechRequest:
    text: str
    voice_id: str


def get_audio_duration(path: Path) -> float:
    try:
        parsed = MutagenFile(path)
        if parsed is not None and parsed.info is not None:
            duration = float(getattr(parsed.info, "length", 0.0))
            return max(duration, 0.0)
    except Exception:
        logger.debug("mutagen could not parse %s", path, exc_info=True)

    if path.suffix.lower() == ".wav":
        try:
            with wave.open(str(path), "rb") as handle:
                frames = handle.getnframes()
                rate = handle.getframerate()
                if rate > 0:
                    return frames / float(rate)
        except (wave.Error, OSError):
            return 0.0
    return 0.0


class NarrationClient:
    name = "narration"

    def __init__(
        self,
        queue: FalQueueClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.queue = queue or FalQueueClient(settings.tts_model, transport=transport)
        self.transport = transport

    async def invoke(self, request: SpeechRequest) -> str:
        text_content = str(request.text or "").strip()
        if not text_content:
            raise RemoteSubmissionError("narration text is empty")
        return await self.queue.submit(
            {
                "text": text_content,
                "voice_setting": {"voice_id": request.voice_id, "speed": 1, "vol": 1, "pitch": 0},
                "output_format": "url",
            }
        )

    async def poll(self, handle: str) -> PollResult:
        result = await self.queue.poll(handle)
        if not isinstance(result, PollDone):
            return result

        data = result.payload if isinstance(result.payload, dict) else {}
        data = data.get("data") or data
        audio_url = str((data.get("audio") or {}).get("url") or "").strip()
        if not audio_url:
            return PollFailed("TTS returned no audio URL")

        duration_ms = data.get("duration_ms")
        if duration_ms:
            duration = float(duration_ms) / 1000.0
        else:
            try:
                duration = await self._measure_duration(audio_url)
            except httpx.HTTPError as exc:
                logger.warning("Narration audio download failed (will retry): handle=%s error=%s", handle, exc)
                return PollPending("measuring narration audio")
        if duration <= 0:
            return PollFailed("narration duration could not be measured")
        return PollDone(NarrationResult(audio_url=audio_url, duration_seconds=round(duration, 3)))

    async def _measure_duration(self, audio_url: str) -> float:
        async with httpx.AsyncClient(timeout=60, transport=self.transport) as client:
            response = await client.get(audio_url)
            response.raise_for_status()
            content = response.content

        temp_root = project_path(settings.temp_dir)
        temp_root.mkdir(parents=True, exist_ok=True)
        suffix = Path(httpx.URL(audio_url).path).suffix or ".mp3"
        with tempfile.TemporaryDirectory(prefix="narration_", dir=temp_root) as tmp_dir:
            audio_path = Path(tmp_dir) / f"narration{suffix}"
            audio_path.write_bytes(content)
            duration = get_audio_duration(audio_path)
        logger.info("Measured narration duration %.3fs for %s", duration, audio_url)
        return duration
