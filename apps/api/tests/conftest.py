"""Shared fakes for the mesh room tests."""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest
from aiortc import AudioStreamTrack, RTCIceCandidate, RTCSessionDescription

from meshroom.services.media import LocalMedia, ToggleableTrack
from meshroom.services.store import InMemoryDocumentStore


class InvalidStateError(RuntimeError):
    pass


class FakePeerConnection:
    """Transport double that mimics a trickling browser peer connection.

    It emits one local candidate after each local description, refuses remote
    candidates before a remote description, and reports ``connected`` once
    both descriptions and a remote candidate are in place.
    """

    def __init__(self, label: str, registry: "FakeConnectionRegistry") -> None:
        self.label = label
        self.registry = registry
        self.ops: list[str] = []
        self.tracks: list[Any] = []
        self.localDescription: RTCSessionDescription | None = None
        self.remoteDescription: RTCSessionDescription | None = None
        self.connectionState = "new"
        self.closed = False
        self._handlers: dict[str, list[Callable[..., Any]]] = {}

    def on(self, event: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            self._handlers.setdefault(event, []).append(handler)
            return handler

        return decorator

    def emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers.get(event, []):
            handler(*args)

    def addTrack(self, track: Any) -> None:
        self.tracks.append(track)

    async def createOffer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=f"v=0 offer from {self.label}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=f"v=0 answer from {self.label}", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.localDescription = description
        self.ops.append(f"local-{description.type}")
        if self.registry.trickle:
            candidate = RTCIceCandidate(
                component=1,
                foundation="1",
                ip="192.0.2.10",
                port=50000 + len(self.ops),
                priority=2122260223,
                protocol="udp",
                type="host",
                sdpMid="0",
                sdpMLineIndex=0,
            )
            asyncio.get_running_loop().call_soon(self.emit, "icecandidate", candidate)

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.remoteDescription = description
        self.ops.append(f"remote-{description.type}")
        asyncio.get_running_loop().call_soon(self.emit, "track", AudioStreamTrack())

    async def addIceCandidate(self, candidate: RTCIceCandidate) -> None:
        if self.remoteDescription is None:
            raise InvalidStateError("remote description not set")
        self.ops.append("remote-candidate")
        if self.localDescription is not None and self.connectionState != "connected":
            self.connectionState = "connected"
            asyncio.get_running_loop().call_soon(self.emit, "connectionstatechange")

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"

    def fail(self) -> None:
        self.connectionState = "failed"
        self.emit("connectionstatechange")


class FakeConnectionRegistry:
    def __init__(self) -> None:
        self.created: dict[str, list[FakePeerConnection]] = {}
        self.trickle = True

    def factory(self, label: str) -> Callable[[], FakePeerConnection]:
        def create() -> FakePeerConnection:
            pc = FakePeerConnection(label, self)
            self.created.setdefault(label, []).append(pc)
            return pc

        return create


@pytest.fixture
def connections() -> FakeConnectionRegistry:
    return FakeConnectionRegistry()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def settle() -> Callable[..., Any]:
    """Return a coroutine that lets store deliveries and peer inboxes run dry."""

    async def _settle(store: InMemoryDocumentStore, *managers: Any, rounds: int = 30) -> None:
        for _ in range(rounds):
            await store.flush()
            for manager in managers:
                if manager is not None:
                    await manager.wait_idle()
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def synthetic_capture() -> Callable[[], Any]:
    """Capture factory producing a capture handle with a silent audio track."""

    async def _capture() -> LocalMedia:
        return LocalMedia(audio=ToggleableTrack(AudioStreamTrack()))

    return _capture
