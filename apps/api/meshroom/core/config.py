"""Runtime configuration for the mesh room service and clients."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

CaptureMode = Literal["device", "synthetic", "none"]


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ])

    store_url: str = Field(default="ws://localhost:8000/api/rooms")
    store_request_timeout: float = Field(default=10.0, gt=0)

    capture_mode: CaptureMode = Field(default="device")
    capture_video_device: str = Field(default="/dev/video0")
    capture_video_format: str = Field(default="v4l2")
    capture_audio_device: str = Field(default="default")
    capture_audio_format: str = Field(default="pulse")
    screen_capture_device: str = Field(default=":0.0")
    screen_capture_format: str = Field(default="x11grab")

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
    @classmethod
    def _split_list(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
