from __future__ import annotations

DEFAULT_SCENE_IMAGE_PROMPT = "Generate one single image that illustrates the narration of this scene."

SCENE_IMAGE_RULES = (
    "Photorealistic, high-quality, vibrant colors.",
    "Engaging visual that supports the narration.",
    "No text, logos, or watermarks.",
    "Professional broadcast quality.",
    "Dynamic composition suitable for video content.",
)

_ORIENTATION_BY_ASPECT = {
    "9:16": "Vertical 9:16 aspect ratio (portrait mode for social media)",
    "16:9": "Horizontal 16:9 aspect ratio (landscape)",
    "1:1": "Square 1:1 aspect ratio",
}


def build_scene_image_prompt(image_prompt: str | None, narration: str, aspect_ratio: str) -> str:
    subject = str(image_prompt or "").strip() or DEFAULT_SCENE_IMAGE_PROMPT
    orientation = _ORIENTATION_BY_ASPECT.get(aspect_ratio, _ORIENTATION_BY_ASPECT["9:16"])
    rules = "\n".join(f"- {rule}" for rule in (orientation, *SCENE_IMAGE_RULES))
    return (
        f"Create a cinematic image for a short-form video.\n\n"
        f"Visual direction: {subject}\n"
        f'Scene narration: "{str(narration or "").strip()}"\n\n'
        f"Requirements:\n{rules}"
    )
