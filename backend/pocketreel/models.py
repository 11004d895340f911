from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator


JobState = Literal["pending", "processing", "completed", "failed"]
SceneKind = Literal["talking_head", "static_asset"]
TERMINAL_STATES: frozenset[str] = frozenset({"completed", "failed"})


class _SceneBase(BaseModel):
    text: str = Field(min_length=1)

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        # Whitespace-only text counts as empty.
        return value.strip() if isinstance(value, str) else value


class TalkingHeadScene(_SceneBase):
    kind: Literal["talking_head"] = "talking_head"


class StaticAssetScene(_SceneBase):
    kind: Literal["static_asset"] = "static_asset"
    asset_url: str | None = None
    image_prompt: str | None = None


SceneRequest = Annotated[Union[TalkingHeadScene, StaticAssetScene], Field(discriminator="kind")]


class JobInput(BaseModel):
    scenes: list[SceneRequest] = Field(min_length=1, max_length=50)
    voice_id: str = Field(min_length=1)
    identity_image_url: str | None = None
    enable_captions: bool = True
    enable_background_music: bool = False
    aspect_ratio: Literal["9:16", "16:9", "1:1"] = "9:16"
    caption_style: Literal["bold-classic", "clean-cut", "modern-pop", "minimal", "vibrant"] = "bold-classic"
    background_music_url: str | None = None

    @field_validator("voice_id", mode="before")
    @classmethod
    def _strip_voice_id(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _require_identity_for_talking_heads(self) -> "JobInput":
        needs_identity = any(scene.kind == "talking_head" for scene in self.scenes)
        if needs_identity and not (self.identity_image_url or "").strip():
            raise ValueError("identity_image_url is required when any scene is talking_head")
        return self


class NarrationResult(BaseModel):
    audio_url: str
    duration_seconds: float = Field(gt=0)


class SceneResult(BaseModel):
    scene_index: int = Field(ge=0)
    kind: SceneKind
    clip_url: str
    audio_url: str | None = None
    duration_seconds: float
    text: str

    @property
    def has_embedded_audio(self) -> bool:
        return self.kind == "talking_head"


class PendingOperation(BaseModel):
    kind: Literal["narration", "visual", "render"]
    scene_index: int
    handle: str | None = None
    started_at: float
    narration: NarrationResult | None = None
    callback: bool = False


class Job(BaseModel):
    job_id: str
    user_id: str = "anonymous"
    status: JobState = "pending"
    version: int = 0
    attempt: int = 1
    input: JobInput
    current_scene_index: int = 0
    completed_scenes: list[SceneResult] = Field(default_factory=list)
    pending_operation: PendingOperation | None = None
    progress_percent: int = 0
    progress_message: str = ""
    result_video_url: str | None = None
    result_duration: float | None = None
    error_message: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def total_scenes(self) -> int:
        return len(self.input.scenes)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class CreateJobRequest(JobInput):
    user_id: str = "anonymous"


class CreateJobResponse(BaseModel):
    job_id: str
    status: str


class AdvanceRequest(BaseModel):
    job_id: str | None = Field(default=None, alias="jobId")

    model_config = {"populate_by_name": True}


class AdvanceResponse(BaseModel):
    job_id: str
    state: str
    status: str
    message: str = ""
    current_scene_index: int = 0
    total_scenes: int = 0


class JobProgress(BaseModel):
    job_id: str
    status: JobState
    progress_percent: int = 0
    progress_message: str = ""
    total_scenes: int = 0
    current_scene_index: int = 0
    completed_count: int = 0
    is_composing: bool = False
    result_video_url: str | None = None
    result_duration: float | None = None
    error_message: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
    matched: bool = False
    job_id: str | None = None
    message: str = ""
