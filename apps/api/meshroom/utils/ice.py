"""ICE candidate conversion between signal payloads and aiortc objects."""
from __future__ import annotations

import logging

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..schemas.signals import IceCandidatePayload

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


def candidate_from_payload(payload: IceCandidatePayload) -> RTCIceCandidate | None:
    """Parse a browser-style candidate line.

    Returns ``None`` for the empty end-of-candidates marker and for lines that
    cannot be parsed.
    """

    line = payload.candidate.strip()
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    if not line:
        return None

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as exc:
        logger.warning("Failed to parse candidate %r: %s", line[:100], exc)
        return None

    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        sdp_mid=candidate.sdpMid,
        sdp_mline_index=candidate.sdpMLineIndex,
    )
