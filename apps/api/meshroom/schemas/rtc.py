"""Data contracts for RTC endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field

from .presence import ParticipantRecord


class RtcConfigResponse(BaseModel):
    ice_servers: list[str] = Field(..., description="STUN/TURN URLs handed to every peer session")


class ParticipantListResponse(BaseModel):
    room: str = Field(..., description="Sanitised room key")
    participants: list[ParticipantRecord]
