"""Append-only signal stream for one room."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from ..schemas.signals import SignalMessage, parse_signal
from .store import SIGNAL_COLLECTION, DocumentStore, Snapshot, Unsubscribe

logger = logging.getLogger(__name__)

SignalListener = Callable[[SignalMessage], Awaitable[None]]


class SignalChannel:
    """Append addressed signals and receive the ones sent to ``participant_id``."""

    def __init__(self, store: DocumentStore, room_key: str, participant_id: str) -> None:
        self._store = store
        self.room_key = room_key
        self.participant_id = participant_id

    async def send(self, message: SignalMessage) -> str:
        return await self._store.add_document(self.room_key, SIGNAL_COLLECTION, message.to_document())

    async def subscribe(self, listener: SignalListener) -> Unsubscribe:
        """Deliver each newly appended signal addressed to this participant once."""

        seen: set[str] = set()

        async def on_snapshot(snapshot: Snapshot) -> None:
            for doc_id, document in snapshot.added:
                if doc_id in seen:
                    continue
                seen.add(doc_id)
                if document.get("to") != self.participant_id:
                    continue
                message = parse_signal(document)
                if message is None:
                    logger.warning("Ignoring malformed signal %s from %s", doc_id, document.get("from"))
                    continue
                await listener(message)

        return await self._store.subscribe(self.room_key, SIGNAL_COLLECTION, on_snapshot)
