"""Room store endpoints: presence listing and the websocket store protocol."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..schemas.presence import ParticipantRecord
from ..schemas.rtc import ParticipantListResponse
from ..services.store import (
    PRESENCE_COLLECTION,
    Snapshot,
    StoreError,
    Unsubscribe,
    room_store,
    sanitize_room_id,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{room}/participants", response_model=ParticipantListResponse)
async def list_participants(room: str) -> ParticipantListResponse:
    """Return the presence records currently stored for a room."""

    room_key = _room_key(room)
    documents = await room_store.get_documents(room_key, PRESENCE_COLLECTION)
    participants: list[ParticipantRecord] = []
    for doc_id, document in documents.items():
        try:
            participants.append(ParticipantRecord.model_validate(document))
        except ValidationError:
            logger.warning("Skipping malformed presence record %s in %s", doc_id, room_key)
    return ParticipantListResponse(room=room_key, participants=participants)


class _RoomClient:
    """Per-websocket state: subscriptions and the presence documents it wrote."""

    def __init__(self, websocket: WebSocket, room_key: str) -> None:
        self.websocket = websocket
        self.room_key = room_key
        self.subscriptions: dict[str, Unsubscribe] = {}
        self.presence_ids: set[str] = set()
        self._send_lock = asyncio.Lock()

    async def send(self, message: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def handle(self, message: dict) -> Any:
        op = message.get("op")
        collection = message.get("collection")

        if op == "subscribe":
            subscription_id = str(message.get("subscription") or "")
            if not subscription_id or not collection:
                raise StoreError("subscribe needs collection and subscription")

            async def push(snapshot: Snapshot) -> None:
                await self.send({"event": "snapshot", "subscription": subscription_id, "snapshot": snapshot.to_wire()})

            previous = self.subscriptions.pop(subscription_id, None)
            if previous is not None:
                await previous()
            self.subscriptions[subscription_id] = await room_store.subscribe(self.room_key, collection, push)
            return subscription_id

        if op == "unsubscribe":
            unsubscribe = self.subscriptions.pop(str(message.get("subscription")), None)
            if unsubscribe is not None:
                await unsubscribe()
            return None

        if not collection:
            raise StoreError(f"{op} needs a collection")

        if op == "set":
            doc_id = _require(message, "doc_id")
            await room_store.set_document(self.room_key, collection, doc_id, _data(message))
            if collection == PRESENCE_COLLECTION:
                self.presence_ids.add(doc_id)
            return None
        if op == "update":
            await room_store.update_document(self.room_key, collection, _require(message, "doc_id"), _data(message))
            return None
        if op == "delete":
            doc_id = _require(message, "doc_id")
            await room_store.delete_document(self.room_key, collection, doc_id)
            if collection == PRESENCE_COLLECTION:
                self.presence_ids.discard(doc_id)
            return None
        if op == "add":
            return await room_store.add_document(self.room_key, collection, _data(message))

        raise StoreError(f"Unknown op {op!r}")

    async def close(self) -> None:
        for unsubscribe in list(self.subscriptions.values()):
            await unsubscribe()
        self.subscriptions.clear()
        # A dropped connection takes its presence with it so peers notice the exit.
        for doc_id in self.presence_ids:
            await room_store.delete_document(self.room_key, PRESENCE_COLLECTION, doc_id)
        self.presence_ids.clear()


@router.websocket("/{room}/ws")
async def room_endpoint(websocket: WebSocket, room: str) -> None:
    """Serve store requests and push snapshots for one room."""

    try:
        room_key = sanitize_room_id(room)
    except ValueError:
        await websocket.close(code=4400)
        return

    await websocket.accept()
    client = _RoomClient(websocket, room_key)
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                continue
            request_id = message.get("id")
            try:
                result = await client.handle(message)
            except StoreError as exc:
                await client.send({"id": request_id, "ok": False, "error": str(exc)})
            else:
                await client.send({"id": request_id, "ok": True, "result": result})
    except WebSocketDisconnect:
        pass
    finally:
        await client.close()
        logger.info("Store client for room %s disconnected", room_key)


def _room_key(room: str) -> str:
    try:
        return sanitize_room_id(room)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _require(message: dict, key: str) -> str:
    value = message.get(key)
    if not isinstance(value, str) or not value:
        raise StoreError(f"{message.get('op')} needs {key}")
    return value


def _data(message: dict) -> dict:
    data = message.get("data")
    if not isinstance(data, dict):
        raise StoreError(f"{message.get('op')} needs an object in data")
    return data
