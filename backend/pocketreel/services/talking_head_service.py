from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from ..config import settings
from ..errors import RemoteSubmissionError
from .remote import PollDone, PollFailed, PollPending, PollResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TalkingHeadRequest:
    image_url: str
    audio_url: str
    webhook_url: str | None = None


@dataclass(frozen=True)
class ClipResult:
    video_url: str


def _unwrap(body: object) -> dict:
    if not isinstance(body, dict):
        return {}
    data = body.get("data")
    return data if isinstance(data, dict) else body


def _first_output(data: dict) -> str | None:
    outputs = data.get("outputs")
    if isinstance(outputs, list) and outputs:
        return str(outputs[0] or "").strip() or None
    output = data.get("output")
    if isinstance(output, dict) and output.get("video"):
        return str(output["video"]).strip() or None
    return None


def _to_poll_result(data: dict) -> PollResult:
    status = str(data.get("status") or "").lower()
    if status == "completed":
        video_url = _first_output(data)
        if not video_url:
            return PollFailed("talking-head generation completed without a video")
        return PollDone(ClipResult(video_url=video_url))
    if status == "failed":
        return PollFailed(f"talking-head generation failed: {str(data.get('error') or 'unknown error')[:300]}")
    return PollPending(status or "processing")


class TalkingHeadClient:
    name = "talking_head"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.wavespeed_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.wavespeed_api_url).rstrip("/")
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def invoke(self, request: TalkingHeadRequest) -> str:
        if not self.api_key:
            raise RemoteSubmissionError("WAVESPEED_API_KEY is not configured")

        params = {"webhook": request.webhook_url} if request.webhook_url else None
        payload = {
            "image": request.image_url,
            "audio": request.audio_url,
            "resolution": settings.talking_head_resolution,
            "seed": -1,
        }
        try:
            async with httpx.AsyncClient(timeout=30, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/{settings.talking_head_model}",
                    headers=self._headers(),
                    json=payload,
                    params=params,
                )
                response.raise_for_status()
                data = _unwrap(response.json())
        except httpx.HTTPStatusError as exc:
            raise RemoteSubmissionError(
                f"talking-head request rejected: HTTP {exc.response.status_code} {(exc.response.text or '')[:300]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RemoteSubmissionError(f"talking-head submission failed: {exc}") from exc

        prediction_id = str(data.get("id") or "").strip()
        if not prediction_id:
            raise RemoteSubmissionError("talking-head service returned no prediction id")
        logger.info(
            "Talking-head started: prediction=%s mode=%s",
            prediction_id,
            "webhook" if request.webhook_url else "polling",
        )
        return prediction_id

    async def poll(self, handle: str) -> PollResult:
        try:
            async with httpx.AsyncClient(timeout=10, transport=self.transport) as client:
                response = await client.get(
                    f"{self.base_url}/predictions/{handle}/result",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                if response.status_code >= 500 or response.status_code == 429:
                    return PollPending(f"HTTP {response.status_code}")
                response.raise_for_status()
                data = _unwrap(response.json())
        except httpx.HTTPStatusError as exc:
            return PollFailed(f"talking-head status HTTP {exc.response.status_code}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Talking-head poll error (will retry): prediction=%s error=%s", handle, exc)
            return PollPending("connection error")
        return _to_poll_result(data)

    def parse_webhook(self, payload: dict) -> tuple[str, PollResult]:
        data = _unwrap(payload)
        return str(data.get("id") or "").strip(), _to_poll_result(data)
