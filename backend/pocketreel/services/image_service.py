from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from ..config import settings
from .fal_client import FalQueueClient
from .prompt_templates import build_scene_image_prompt
from .remote import PollDone, PollFailed, PollResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageRequest:
    prompt: str
    aspect_ratio: str = "9:16"


@dataclass(frozen=True)
class ImageResult:
    image_url: str


def scene_image_request(image_prompt: str | None, narration: str, aspect_ratio: str) -> ImageRequest:
    return ImageRequest(
        prompt=build_scene_image_prompt(image_prompt, narration, aspect_ratio),
        aspect_ratio=aspect_ratio,
    )


class ImageClient:
    name = "image"

    def __init__(
        self,
        queue: FalQueueClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.queue = queue or FalQueueClient(settings.image_model, transport=transport)

    async def invoke(self, request: ImageRequest) -> str:
        return await self.queue.submit(
            {
                "prompt": request.prompt,
                "aspect_ratio": request.aspect_ratio,
                "output_format": "png",
                "num_images": 1,
            }
        )

    async def poll(self, handle: str) -> PollResult:
        result = await self.queue.poll(handle)
        if not isinstance(result, PollDone):
            return result

        data = result.payload if isinstance(result.payload, dict) else {}
        data = data.get("data") or data
        images = data.get("images") or []
        image_url = ""
        if images and isinstance(images[0], dict):
            image_url = str(images[0].get("url") or "").strip()
        if not image_url:
            return PollFailed("image generation finished without an image URL")
        logger.info("Scene image ready: handle=%s url=%s", handle, image_url[:200])
        return PollDone(ImageResult(image_url=image_url))
