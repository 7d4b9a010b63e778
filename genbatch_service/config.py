"""
Configuration loader for the batch generation service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Generation provider
    gemini_api_key: Optional[str] = Field(None, env="GEMINI_API_KEY")
    gemini_base_url: str = Field(
        "https://generativelanguage.googleapis.com/v1beta", env="GEMINI_BASE_URL"
    )
    image_model_standard: str = Field("gemini-2.5-flash-image", env="IMAGE_MODEL_STANDARD")
    image_model_pro: str = Field("gemini-3-pro-image-preview", env="IMAGE_MODEL_PRO")
    video_model: str = Field("veo-3.1-fast-generate-preview", env="VIDEO_MODEL")

    # Retry / pacing policy
    max_attempts: int = Field(3, env="MAX_ATTEMPTS")
    base_delay_seconds: float = Field(4.0, env="BASE_DELAY_SECONDS")
    inter_job_cooldown_seconds: float = Field(2.0, env="INTER_JOB_COOLDOWN_SECONDS")
    request_timeout_seconds: float = Field(120.0, env="REQUEST_TIMEOUT_SECONDS")

    # Video operations have no natural end; cap how long we poll.
    video_poll_interval_seconds: float = Field(5.0, env="VIDEO_POLL_INTERVAL_SECONDS")
    video_max_wait_seconds: float = Field(600.0, env="VIDEO_MAX_WAIT_SECONDS")

    # Post-processing tunables
    background_tolerance: float = Field(12.0, env="BACKGROUND_TOLERANCE")

    # History / persistence
    history_backend: str = Field("local", env="HISTORY_BACKEND")
    history_dir: Path = Field(Path("./data/history"), env="HISTORY_DIR")

    # Finished batches kept in memory by the HTTP layer
    max_retained_batches: int = Field(100, env="MAX_RETAINED_BATCHES")

    # Cloudflare R2 / S3-compatible storage
    r2_endpoint: Optional[str] = Field(None, env="R2_ENDPOINT")
    r2_access_key_id: Optional[str] = Field(None, env="R2_ACCESS_KEY_ID")
    r2_secret_access_key: Optional[str] = Field(None, env="R2_SECRET_ACCESS_KEY")
    r2_bucket_name: Optional[str] = Field(None, env="R2_BUCKET_NAME")
    r2_public_base_url: Optional[str] = Field(None, env="R2_PUBLIC_BASE_URL")
    r2_prefix: str = Field("history/", env="R2_PREFIX")

    log_level: str = Field("INFO", env="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @validator("max_attempts")
    def validate_max_attempts(cls, v: int) -> int:  # noqa: B902
        if v < 1:
            raise ValueError("MAX_ATTEMPTS must be at least 1")
        return v

    @validator("max_retained_batches")
    def validate_max_retained_batches(cls, v: int) -> int:  # noqa: B902
        if v < 1:
            raise ValueError("MAX_RETAINED_BATCHES must be at least 1")
        return v

    @validator(
        "base_delay_seconds",
        "inter_job_cooldown_seconds",
        "video_poll_interval_seconds",
        "video_max_wait_seconds",
    )
    def validate_non_negative(cls, v: float) -> float:  # noqa: B902
        if v < 0:
            raise ValueError("delays must be non-negative")
        return v

    @validator("history_backend")
    def validate_history_backend(cls, v: str) -> str:  # noqa: B902
        v = v.lower()
        if v not in {"local", "r2"}:
            raise ValueError("HISTORY_BACKEND must be one of local|r2")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
