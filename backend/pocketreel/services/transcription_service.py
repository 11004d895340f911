from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from ..config import settings
from .fal_client import FalQueueClient
from .remote import PollDone, PollResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptionRequest:
    audio_url: str
    language: str = "en"


@dataclass(frozen=True)
class WordTiming:
    word: str
    start: float
    end: float


@dataclass(frozen=True)
class Transcript:
    text: str
    words: list[WordTiming] = field(default_factory=list)


def _parse_words(chunks: object) -> list[WordTiming]:
    words: list[WordTiming] = []
    if not isinstance(chunks, list):
        return words
    for chunk in chunks:
        if not isinstance(chunk, dict):
            continue
        text = str(chunk.get("text") or "").strip()
        stamp = chunk.get("timestamp") or []
        if not text or len(stamp) < 2 or stamp[0] is None:
            continue
        start = float(stamp[0])
        end = float(stamp[1]) if stamp[1] is not None else start
        words.append(WordTiming(word=text, start=start, end=max(start, end)))
    return words


class TranscriptionClient:
    name = "transcription"

    def __init__(
        self,
        queue: FalQueueClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.queue = queue or FalQueueClient(settings.transcription_model, transport=transport)

    async def invoke(self, request: TranscriptionRequest) -> str:
        return await self.queue.submit(
            {
                "audio_url": request.audio_url,
                "task": "transcribe",
                "language": request.language,
                "chunk_level": "word",
                "version": "3",
            }
        )

    async def poll(self, handle: str) -> PollResult:
        result = await self.queue.poll(handle)
        if not isinstance(result, PollDone):
            return result

        data = result.payload if isinstance(result.payload, dict) else {}
        data = data.get("data") or data
        words = _parse_words(data.get("chunks"))
        if not words:
            logger.warning("Transcription returned no word chunks: handle=%s", handle)
        return PollDone(Transcript(text=str(data.get("text") or ""), words=words))
