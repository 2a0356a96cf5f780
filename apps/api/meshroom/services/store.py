"""Shared document store backing a room's presence, signal and chat collections."""
from __future__ import annotations

import asyncio
import logging
import re
from contextlib import suppress
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Awaitable, Callable, Dict, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
SnapshotListener = Callable[["Snapshot"], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]

PRESENCE_COLLECTION = "participants"
SIGNAL_COLLECTION = "signals"
CHAT_COLLECTION = "messages"

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9]")


class StoreError(RuntimeError):
    """Raised when a store read or write cannot be completed."""


class DocumentNotFoundError(StoreError):
    """Raised when updating a document that does not exist."""


def sanitize_room_id(room_id: str) -> str:
    """Map a free-form room name onto a safe collection key."""

    key = _UNSAFE_KEY_CHARS.sub("_", room_id.strip())
    if not key:
        raise ValueError("Room id must not be empty")
    return key


@dataclass(slots=True)
class Snapshot:
    """Full state of one collection plus what changed since the previous delivery."""

    documents: Dict[str, Document]
    added: list[tuple[str, Document]] = field(default_factory=list)
    modified: list[tuple[str, Document]] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def to_wire(self) -> dict:
        return {
            "documents": [[doc_id, doc] for doc_id, doc in self.documents.items()],
            "added": [[doc_id, doc] for doc_id, doc in self.added],
            "modified": [[doc_id, doc] for doc_id, doc in self.modified],
            "removed": list(self.removed),
        }

    @classmethod
    def from_wire(cls, payload: dict) -> "Snapshot":
        return cls(
            documents={doc_id: doc for doc_id, doc in payload.get("documents", [])},
            added=[(doc_id, doc) for doc_id, doc in payload.get("added", [])],
            modified=[(doc_id, doc) for doc_id, doc in payload.get("modified", [])],
            removed=list(payload.get("removed", [])),
        )


class DocumentStore(Protocol):
    """Per-room collections of JSON documents with live snapshot subscriptions."""

    async def set_document(self, room: str, collection: str, doc_id: str, data: Document) -> None: ...

    async def update_document(self, room: str, collection: str, doc_id: str, fields: Document) -> None: ...

    async def delete_document(self, room: str, collection: str, doc_id: str) -> None: ...

    async def add_document(self, room: str, collection: str, data: Document) -> str: ...

    async def subscribe(self, room: str, collection: str, listener: SnapshotListener) -> Unsubscribe: ...


class SnapshotSubscription:
    """Deliver snapshots to one listener strictly in the order they were queued."""

    def __init__(self, listener: SnapshotListener) -> None:
        self._listener = listener
        self._queue: asyncio.Queue[Snapshot] = asyncio.Queue()
        self._task: asyncio.Task[None] = asyncio.create_task(self._pump())

    def push(self, snapshot: Snapshot) -> None:
        self._queue.put_nowait(snapshot)

    async def drain(self) -> None:
        await self._queue.join()

    async def cancel(self) -> None:
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task

    async def _pump(self) -> None:
        while True:
            snapshot = await self._queue.get()
            try:
                await self._listener(snapshot)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - one listener must not break delivery to others
                logger.exception("Snapshot listener failed")
            finally:
                self._queue.task_done()


class InMemoryDocumentStore:
    """Process-local store; the service exposes one of these to remote clients."""

    def __init__(self) -> None:
        self._collections: Dict[tuple[str, str], Dict[str, Document]] = {}
        self._subscriptions: Dict[tuple[str, str], Dict[int, SnapshotSubscription]] = {}
        self._lock = asyncio.Lock()
        self._subscription_ids = count(1)

    async def set_document(self, room: str, collection: str, doc_id: str, data: Document) -> None:
        async with self._lock:
            docs = self._collections.setdefault((room, collection), {})
            existed = doc_id in docs
            docs[doc_id] = dict(data)
            change = (doc_id, dict(data))
            if existed:
                self._publish_locked(room, collection, modified=[change])
            else:
                self._publish_locked(room, collection, added=[change])

    async def update_document(self, room: str, collection: str, doc_id: str, fields: Document) -> None:
        async with self._lock:
            docs = self._collections.get((room, collection), {})
            if doc_id not in docs:
                raise DocumentNotFoundError(f"{collection}/{doc_id} does not exist in room {room}")
            docs[doc_id] = {**docs[doc_id], **fields}
            self._publish_locked(room, collection, modified=[(doc_id, dict(docs[doc_id]))])

    async def delete_document(self, room: str, collection: str, doc_id: str) -> None:
        async with self._lock:
            docs = self._collections.get((room, collection))
            if not docs or doc_id not in docs:
                return
            docs.pop(doc_id)
            if not docs:
                self._collections.pop((room, collection), None)
            self._publish_locked(room, collection, removed=[doc_id])

    async def add_document(self, room: str, collection: str, data: Document) -> str:
        doc_id = uuid4().hex
        async with self._lock:
            docs = self._collections.setdefault((room, collection), {})
            docs[doc_id] = dict(data)
            self._publish_locked(room, collection, added=[(doc_id, dict(data))])
        return doc_id

    async def get_documents(self, room: str, collection: str) -> Dict[str, Document]:
        async with self._lock:
            return _copy_documents(self._collections.get((room, collection), {}))

    async def subscribe(self, room: str, collection: str, listener: SnapshotListener) -> Unsubscribe:
        """Register a listener; it first receives every existing document as added."""

        key = (room, collection)
        async with self._lock:
            subscription_id = next(self._subscription_ids)
            subscription = SnapshotSubscription(listener)
            self._subscriptions.setdefault(key, {})[subscription_id] = subscription
            documents = _copy_documents(self._collections.get(key, {}))
            subscription.push(Snapshot(documents=documents, added=list(documents.items())))

        async def unsubscribe() -> None:
            async with self._lock:
                subscriptions = self._subscriptions.get(key)
                removed = subscriptions.pop(subscription_id, None) if subscriptions else None
                if subscriptions is not None and not subscriptions:
                    self._subscriptions.pop(key, None)
            if removed is not None:
                await removed.cancel()

        return unsubscribe

    async def flush(self) -> None:
        """Wait until every queued snapshot has been handed to its listener."""

        async with self._lock:
            subscriptions = [sub for subs in self._subscriptions.values() for sub in subs.values()]
        for subscription in subscriptions:
            await subscription.drain()

    def _publish_locked(
        self,
        room: str,
        collection: str,
        *,
        added: list[tuple[str, Document]] | None = None,
        modified: list[tuple[str, Document]] | None = None,
        removed: list[str] | None = None,
    ) -> None:
        subscriptions = self._subscriptions.get((room, collection))
        if not subscriptions:
            return
        documents = _copy_documents(self._collections.get((room, collection), {}))
        for subscription in subscriptions.values():
            subscription.push(
                Snapshot(
                    documents=dict(documents),
                    added=list(added or []),
                    modified=list(modified or []),
                    removed=list(removed or []),
                )
            )


def _copy_documents(documents: Dict[str, Document]) -> Dict[str, Document]:
    return {doc_id: dict(doc) for doc_id, doc in documents.items()}


room_store = InMemoryDocumentStore()
