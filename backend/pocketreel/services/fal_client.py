from __future__ import annotations

import logging

import httpx

from ..config import settings
from ..errors import RemoteSubmissionError
from .remote import PollDone, PollFailed, PollPending, PollResult


logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def _queue_app(model_id: str) -> str:
    # fal serves request status under "<owner>/<app>", even for sub-path endpoints.
    parts = [part for part in str(model_id or "").split("/") if part]
    return "/".join(parts[:2])


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return (response.text or "")[:300]
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error") or data.get("message")
        if detail:
            return str(detail)[:300]
    return str(data)[:300]


class FalQueueClient:
    def __init__(
        self,
        model_id: str,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.model_id = model_id
        self.api_key = settings.fal_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.fal_queue_url).rstrip("/")
        self.transport = transport
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"}

    def _request_url(self, request_id: str, suffix: str = "") -> str:
        return f"{self.base_url}/{_queue_app(self.model_id)}/requests/{request_id}{suffix}"

    async def submit(self, arguments: dict, webhook_url: str | None = None) -> str:
        if not self.api_key:
            raise RemoteSubmissionError("FAL_KEY is not configured")

        url = f"{self.base_url}/{self.model_id}"
        params = {"fal_webhook": webhook_url} if webhook_url else None
        try:
            async with self._client() as client:
                response = await client.post(url, headers=self._headers(), json=arguments, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise RemoteSubmissionError(
                f"{self.model_id} rejected request: HTTP {exc.response.status_code} {_error_detail(exc.response)}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RemoteSubmissionError(f"{self.model_id} submission failed: {exc}") from exc

        request_id = str((data if isinstance(data, dict) else {}).get("request_id") or "").strip()
        if not request_id:
            raise RemoteSubmissionError(f"{self.model_id} returned no request_id")
        logger.info("fal request submitted: model=%s request_id=%s", self.model_id, request_id)
        return request_id

    async def poll(self, request_id: str) -> PollResult:
        try:
            async with self._client() as client:
                status_response = await client.get(self._request_url(request_id, "/status"), headers=self._headers())
                if status_response.status_code in _RETRYABLE_STATUS:
                    return PollPending(f"status HTTP {status_response.status_code}")
                if status_response.status_code >= 400:
                    return PollFailed(
                        f"{self.model_id} status HTTP {status_response.status_code}: {_error_detail(status_response)}"
                    )
                status_data = status_response.json()
                if not isinstance(status_data, dict):
                    return PollPending("unexpected status body")
                state = str(status_data.get("status") or "").upper()
                if state != "COMPLETED":
                    return PollPending(state.lower() or "queued")
                if status_data.get("error"):
                    return PollFailed(f"{self.model_id} failed: {str(status_data.get('error'))[:300]}")

                result_response = await client.get(self._request_url(request_id), headers=self._headers())
                if result_response.status_code in _RETRYABLE_STATUS:
                    return PollPending(f"result HTTP {result_response.status_code}")
                if result_response.status_code >= 400:
                    return PollFailed(f"{self.model_id} failed: {_error_detail(result_response)}")
                result_data = result_response.json()
                if not isinstance(result_data, dict):
                    return PollPending("unexpected result body")
                return PollDone(result_data)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("fal poll error (will retry): model=%s request_id=%s error=%s", self.model_id, request_id, exc)
            return PollPending("connection error")
