"""Room chat kept in the same store as signaling."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from pydantic import ValidationError

from ..schemas.chat import ChatMessage
from .store import CHAT_COLLECTION, DocumentStore, Snapshot, Unsubscribe

logger = logging.getLogger(__name__)

ChatListener = Callable[[list[ChatMessage]], Awaitable[None]]


class ChatLog:
    def __init__(self, store: DocumentStore, room_key: str) -> None:
        self._store = store
        self.room_key = room_key

    async def send(self, sender: str, text: str, *, is_ai: bool = False) -> ChatMessage:
        body = text.strip()
        if not body:
            raise ValueError("Chat message must not be empty")
        message = ChatMessage(sender=sender, text=body, timestamp=datetime.now(timezone.utc), is_ai=is_ai)
        doc_id = await self._store.add_document(self.room_key, CHAT_COLLECTION, message.to_document())
        return message.model_copy(update={"id": doc_id})

    async def subscribe(self, listener: ChatListener) -> Unsubscribe:
        """Deliver the whole history, oldest first, on every new message."""

        async def on_snapshot(snapshot: Snapshot) -> None:
            messages: list[ChatMessage] = []
            for doc_id, document in snapshot.documents.items():
                try:
                    messages.append(ChatMessage.model_validate({**document, "id": doc_id}))
                except ValidationError:
                    logger.warning("Skipping malformed chat message %s", doc_id)
            messages.sort(key=lambda message: message.timestamp)
            await listener(messages)

        return await self._store.subscribe(self.room_key, CHAT_COLLECTION, on_snapshot)
