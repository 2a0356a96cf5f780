"""Signal messages exchanged through a room's signal collection.

Messages are a tagged union on ``type``. Documents that fail validation are
dropped by :func:`parse_signal` instead of raising, so a malformed or unknown
message never interrupts the handshake of other peers.
"""
from __future__ import annotations

import enum
import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class SignalKind(str, enum.Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class SessionDescription(BaseModel):
    sdp: str = Field(..., min_length=1)
    type: Literal["offer", "answer"]


class IceCandidatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")


class _Signal(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sender: str = Field(..., min_length=1, alias="from")
    recipient: str = Field(..., min_length=1, alias="to")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class OfferSignal(_Signal):
    type: Literal["offer"] = "offer"
    payload: SessionDescription


class AnswerSignal(_Signal):
    type: Literal["answer"] = "answer"
    payload: SessionDescription


class CandidateSignal(_Signal):
    type: Literal["ice-candidate"] = "ice-candidate"
    payload: IceCandidatePayload


SignalMessage = Annotated[
    Union[OfferSignal, AnswerSignal, CandidateSignal],
    Field(discriminator="type"),
]

_signal_adapter: TypeAdapter[SignalMessage] = TypeAdapter(SignalMessage)


def parse_signal(document: object) -> SignalMessage | None:
    """Validate a stored document, returning ``None`` when it is not a signal."""

    try:
        return _signal_adapter.validate_python(document)
    except ValidationError as exc:
        logger.debug("Ignoring malformed signal document: %s", exc.errors(include_url=False))
        return None
