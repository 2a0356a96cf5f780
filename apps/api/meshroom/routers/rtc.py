"""RTC configuration endpoint."""
from __future__ import annotations

from fastapi import APIRouter

from ..core.config import settings
from ..schemas.rtc import RtcConfigResponse

router = APIRouter()


@router.get("/config", response_model=RtcConfigResponse)
async def get_rtc_config() -> RtcConfigResponse:
    """Return the ICE servers every participant should hand to its peer sessions."""

    return RtcConfigResponse(ice_servers=list(settings.ice_servers))
