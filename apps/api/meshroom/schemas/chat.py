"""Chat messages kept beside the signaling collections."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    sender: str
    text: str = Field(..., min_length=1)
    timestamp: datetime
    is_ai: bool = Field(default=False, alias="isAI")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})
