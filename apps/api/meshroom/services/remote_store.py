"""Websocket client for the room store endpoint served by ``meshroom.main``."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from itertools import count
from typing import Any, Dict

import websockets

from ..core.config import settings
from .store import Document, Snapshot, SnapshotListener, SnapshotSubscription, StoreError, Unsubscribe

logger = logging.getLogger(__name__)


class RoomConnection:
    """One websocket per room carrying store requests and snapshot pushes."""

    def __init__(self, ws: Any, *, request_timeout: float) -> None:
        self._ws = ws
        self._request_timeout = request_timeout
        self._request_ids = count(1)
        self._pending: Dict[str, asyncio.Future[Any]] = {}
        self._subscriptions: Dict[str, SnapshotSubscription] = {}
        self._send_lock = asyncio.Lock()
        self._receive_task: asyncio.Task[None] = asyncio.create_task(self._receive_loop())

    async def request(self, op: str, **fields: Any) -> Any:
        request_id = str(next(self._request_ids))
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"id": request_id, "op": op, **fields}
        try:
            async with self._send_lock:
                await self._ws.send(json.dumps(message))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreError(f"Store request {op} timed out") from exc
        except websockets.ConnectionClosed as exc:
            raise StoreError(f"Store connection closed during {op}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def subscribe(self, collection: str, listener: SnapshotListener) -> Unsubscribe:
        # Registered before the request so the initial snapshot push is never dropped.
        subscription_id = f"sub-{next(self._request_ids)}"
        subscription = SnapshotSubscription(listener)
        self._subscriptions[subscription_id] = subscription
        try:
            await self.request("subscribe", collection=collection, subscription=subscription_id)
        except StoreError:
            self._subscriptions.pop(subscription_id, None)
            await subscription.cancel()
            raise

        async def unsubscribe() -> None:
            removed = self._subscriptions.pop(subscription_id, None)
            if removed is None:
                return
            await removed.cancel()
            with suppress(StoreError):
                await self.request("unsubscribe", subscription=subscription_id)

        return unsubscribe

    async def close(self) -> None:
        self._receive_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._receive_task
        for subscription in list(self._subscriptions.values()):
            await subscription.cancel()
        self._subscriptions.clear()
        await self._ws.close()

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                self._dispatch(json.loads(raw))
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed:
            logger.warning("Store connection closed by server")
        except Exception:  # noqa: BLE001 - surface through pending requests instead
            logger.exception("Store receive loop failed")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(StoreError("Store connection lost"))

    def _dispatch(self, message: dict) -> None:
        if message.get("event") == "snapshot":
            subscription = self._subscriptions.get(str(message.get("subscription")))
            if subscription is not None:
                subscription.push(Snapshot.from_wire(message.get("snapshot") or {}))
            return

        future = self._pending.get(str(message.get("id")))
        if future is None or future.done():
            return
        if message.get("ok"):
            future.set_result(message.get("result"))
        else:
            future.set_exception(StoreError(message.get("error") or "Store request failed"))


class RemoteDocumentStore:
    """:class:`~meshroom.services.store.DocumentStore` over the service websocket."""

    def __init__(self, base_url: str | None = None, *, request_timeout: float | None = None) -> None:
        self._base_url = (base_url or settings.store_url).rstrip("/")
        self._request_timeout = request_timeout or settings.store_request_timeout
        self._connections: Dict[str, RoomConnection] = {}
        self._lock = asyncio.Lock()

    async def set_document(self, room: str, collection: str, doc_id: str, data: Document) -> None:
        connection = await self._connection(room)
        await connection.request("set", collection=collection, doc_id=doc_id, data=data)

    async def update_document(self, room: str, collection: str, doc_id: str, fields: Document) -> None:
        connection = await self._connection(room)
        await connection.request("update", collection=collection, doc_id=doc_id, data=fields)

    async def delete_document(self, room: str, collection: str, doc_id: str) -> None:
        connection = await self._connection(room)
        await connection.request("delete", collection=collection, doc_id=doc_id)

    async def add_document(self, room: str, collection: str, data: Document) -> str:
        connection = await self._connection(room)
        return str(await connection.request("add", collection=collection, data=data))

    async def subscribe(self, room: str, collection: str, listener: SnapshotListener) -> Unsubscribe:
        connection = await self._connection(room)
        return await connection.subscribe(collection, listener)

    async def close(self) -> None:
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            await connection.close()

    async def _connection(self, room: str) -> RoomConnection:
        async with self._lock:
            connection = self._connections.get(room)
            if connection is None:
                url = f"{self._base_url}/{room}/ws"
                try:
                    ws = await websockets.connect(url)
                except (OSError, websockets.InvalidHandshake) as exc:
                    raise StoreError(f"Could not reach store at {url}") from exc
                connection = RoomConnection(ws, request_timeout=self._request_timeout)
                self._connections[room] = connection
            return connection
