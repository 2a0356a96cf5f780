"""Session directory: the replicated set of presence records for one room."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from pydantic import ValidationError

from ..schemas.presence import ParticipantRecord
from .store import PRESENCE_COLLECTION, DocumentStore, Snapshot, Unsubscribe

logger = logging.getLogger(__name__)

DirectoryListener = Callable[[list[ParticipantRecord]], Awaitable[None]]


class SessionDirectory:
    """Read and write presence records of a single room."""

    def __init__(self, store: DocumentStore, room_key: str) -> None:
        self._store = store
        self.room_key = room_key

    async def publish(self, record: ParticipantRecord) -> ParticipantRecord:
        """Create or replace the record, stamping ``lastSeen``."""

        stamped = record.model_copy(update={"last_seen": datetime.now(timezone.utc)})
        await self._store.set_document(self.room_key, PRESENCE_COLLECTION, stamped.id, stamped.to_document())
        return stamped

    async def remove(self, participant_id: str) -> None:
        await self._store.delete_document(self.room_key, PRESENCE_COLLECTION, participant_id)

    async def subscribe(self, listener: DirectoryListener) -> Unsubscribe:
        """Deliver the full record list on every change to any record."""

        async def on_snapshot(snapshot: Snapshot) -> None:
            await listener(_parse_records(snapshot))

        return await self._store.subscribe(self.room_key, PRESENCE_COLLECTION, on_snapshot)


def _parse_records(snapshot: Snapshot) -> list[ParticipantRecord]:
    records: list[ParticipantRecord] = []
    for doc_id, document in snapshot.documents.items():
        try:
            record = ParticipantRecord.model_validate(document)
        except ValidationError:
            logger.warning("Skipping malformed presence record %s", doc_id)
            continue
        if record.id != doc_id:
            logger.warning("Skipping presence record %s stored under id %s", record.id, doc_id)
            continue
        records.append(record)
    return records
