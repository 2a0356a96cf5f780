"""Presence records stored in a room's participant directory."""
from __future__ import annotations

from datetime import datetime
import enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class MediaFlag(str, enum.Enum):
    MUTED = "isMuted"
    VIDEO_OFF = "isVideoOff"
    SCREEN_SHARING = "isScreenSharing"


class MediaFlags(BaseModel):
    """Local media state mirrored into the directory."""

    model_config = ConfigDict(populate_by_name=True)

    is_muted: bool = Field(default=True, alias="isMuted")
    is_video_off: bool = Field(default=True, alias="isVideoOff")
    is_screen_sharing: bool = Field(default=False, alias="isScreenSharing")

    def get(self, flag: MediaFlag) -> bool:
        return bool(getattr(self, _FLAG_FIELDS[flag]))

    def with_flag(self, flag: MediaFlag, value: bool) -> "MediaFlags":
        return self.model_copy(update={_FLAG_FIELDS[flag]: value})


_FLAG_FIELDS = {
    MediaFlag.MUTED: "is_muted",
    MediaFlag.VIDEO_OFF: "is_video_off",
    MediaFlag.SCREEN_SHARING: "is_screen_sharing",
}


class ParticipantRecord(MediaFlags):
    """Replicated identity and media state of one room member."""

    id: str = Field(..., min_length=1, description="Opaque participant identifier")
    name: str = Field(..., description="Display name")
    avatar: str | None = Field(default=None, description="Avatar URL or data URI")
    is_ai: bool = Field(default=False, alias="isAI")
    last_seen: datetime | None = Field(default=None, alias="lastSeen")

    @property
    def flags(self) -> MediaFlags:
        return MediaFlags(
            is_muted=self.is_muted,
            is_video_off=self.is_video_off,
            is_screen_sharing=self.is_screen_sharing,
        )

    def with_flags(self, flags: MediaFlags) -> "ParticipantRecord":
        return self.model_copy(update=flags.model_dump())

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def new_participant_id() -> str:
    """Return a fresh identifier, stable for one room session."""

    return uuid4().hex
