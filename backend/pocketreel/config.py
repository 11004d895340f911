from __future__ import annotations

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(PROJECT_ROOT / ".env.local")
load_dotenv(PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    app_name: str = "PocketReel Backend"
    app_env: str = "development"
    backend_port: int = Field(default=8000, alias="BACKEND_PORT")
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")

    fal_api_key: str = Field(default="", alias="FAL_KEY")
    fal_queue_url: str = Field(default="https://queue.fal.run", alias="FAL_QUEUE_URL")
    tts_model: str = Field(default="fal-ai/minimax/speech-02-hd", alias="TTS_MODEL")
    image_model: str = Field(default="fal-ai/nano-banana", alias="IMAGE_MODEL")
    transcription_model: str = Field(default="fal-ai/whisper", alias="TRANSCRIPTION_MODEL")

    wavespeed_api_key: str = Field(default="", alias="WAVESPEED_API_KEY")
    wavespeed_api_url: str = Field(default="https://api.wavespeed.ai/api/v3", alias="WAVESPEED_API_URL")
    talking_head_model: str = Field(default="wavespeed-ai/infinitetalk", alias="TALKING_HEAD_MODEL")
    talking_head_resolution: str = Field(default="480p", alias="TALKING_HEAD_RESOLUTION")

    json2video_api_key: str = Field(default="", alias="JSON2VIDEO_API_KEY")
    json2video_api_url: str = Field(default="https://api.json2video.com/v2", alias="JSON2VIDEO_API_URL")

    driver_mode: Literal["monolithic", "chunked"] = Field(default="chunked", alias="DRIVER_MODE")
    poll_interval_seconds: float = Field(default=5.0, alias="POLL_INTERVAL_SECONDS")
    inline_poll_budget_seconds: float = Field(default=45.0, alias="INLINE_POLL_BUDGET_SECONDS")
    operation_timeout_seconds: float = Field(default=300.0, alias="OPERATION_TIMEOUT_SECONDS")
    claim_lease_seconds: float = Field(default=120.0, alias="CLAIM_LEASE_SECONDS")
    callback_backup_poll_seconds: float = Field(default=60.0, alias="CALLBACK_BACKUP_POLL_SECONDS")
    stale_job_seconds: float = Field(default=900.0, alias="STALE_JOB_SECONDS")
    transcription_budget_seconds: float = Field(default=90.0, alias="TRANSCRIPTION_BUDGET_SECONDS")

    caption_word_timing: bool = Field(default=False, alias="CAPTION_WORD_TIMING")
    background_music_url: str = Field(
        default="https://tfaumdiiljwnjmfnonrc.supabase.co/storage/v1/object/public/Bgmusic/Feeling%20Blue.mp3",
        alias="BACKGROUND_MUSIC_URL",
    )
    transition_sound_url: str = Field(
        default="https://tfaumdiiljwnjmfnonrc.supabase.co/storage/v1/object/public/Bgmusic/clickit.mp3",
        alias="TRANSITION_SOUND_URL",
    )

    jobs_db_path: str = Field(default="data/jobs.db", alias="JOBS_DB_PATH")
    temp_dir: str = Field(default="outputs/temp", alias="TEMP_DIR")
    log_dir: str = Field(default="logs", alias="LOG_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")
    cors_allow_origins: str = Field(default="*", alias="CORS_ALLOW_ORIGINS")


settings = Settings()


def project_path(raw: str) -> Path:
    path = Path(raw)
    if path.is_absolute():
        return path
    return PROJECT_ROOT / path


def callback_base_url() -> str | None:
    base = (settings.public_base_url or "").strip().rstrip("/")
    if not base:
        return None
    if "localhost" in base or "127.0.0.1" in base:
        return None
    return base
