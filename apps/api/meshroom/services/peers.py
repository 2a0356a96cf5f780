"""Peer connection manager for a full-mesh room.

Every remote participant gets one :class:`PeerSession`. The session map is only
mutated under the manager lock, and each session drains its own inbox in a
single worker task: signals, negotiation requests and transport callbacks are
queued rather than applied where they arrive. That keeps the per-pair order
(offer, answer, candidates) while different peers negotiate concurrently.

Roles are decided by id: the lexicographically smaller id initiates.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Union

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from ..schemas.signals import (
    AnswerSignal,
    CandidateSignal,
    IceCandidatePayload,
    OfferSignal,
    SessionDescription,
    SignalMessage,
)
from ..utils.ice import candidate_from_payload, candidate_to_payload

logger = logging.getLogger(__name__)

SendSignal = Callable[[SignalMessage], Awaitable[Any]]
TrackSource = Callable[[], list[MediaStreamTrack]]
ConnectionFactory = Callable[[], Any]
FeedListener = Callable[[str, Union["RemoteFeed", None]], Awaitable[None]]


class PeerRole(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class HandshakeState(str, enum.Enum):
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_ANSWER = "have-remote-answer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    HAVE_LOCAL_ANSWER = "have-local-answer"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


# Handshake steps kept on each session for diagnostics.
APPLIED_HISTORY = 64

REMOTE_DESCRIPTION_STATES = frozenset(
    {
        HandshakeState.HAVE_REMOTE_ANSWER,
        HandshakeState.HAVE_REMOTE_OFFER,
        HandshakeState.HAVE_LOCAL_ANSWER,
        HandshakeState.CONNECTED,
    }
)


@dataclass(slots=True)
class RemoteFeed:
    participant_id: str
    tracks: list[MediaStreamTrack]


@dataclass(slots=True)
class _Negotiate:
    pass


@dataclass(slots=True)
class _TransportEvent:
    pc: Any
    kind: str
    value: Any = None


_InboxItem = Union[_Negotiate, _TransportEvent, OfferSignal, AnswerSignal, CandidateSignal]


@dataclass(eq=False)
class PeerSession:
    """One pairwise media session and its handshake progress."""

    target_id: str
    role: PeerRole
    pc: Any
    state: HandshakeState = HandshakeState.NEW
    local_tracks: list[MediaStreamTrack] = field(default_factory=list)
    remote_tracks: list[MediaStreamTrack] = field(default_factory=list)
    pending_candidates: list[IceCandidatePayload] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    last_error: str | None = None
    closed: bool = False
    inbox: asyncio.Queue[_InboxItem] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None

    @property
    def has_remote_description(self) -> bool:
        return self.state in REMOTE_DESCRIPTION_STATES

    @property
    def remote_feed(self) -> RemoteFeed | None:
        if not self.remote_tracks or self.state is HandshakeState.FAILED:
            return None
        return RemoteFeed(participant_id=self.target_id, tracks=list(self.remote_tracks))


def create_peer_connection(ice_servers: Iterable[str]) -> RTCPeerConnection:
    """Build an aiortc peer connection using the configured STUN/TURN URLs."""

    servers = [RTCIceServer(urls=[url]) for url in ice_servers]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))


class PeerConnectionManager:
    """Own the live sessions of one participant and drive their handshakes."""

    def __init__(
        self,
        self_id: str,
        send_signal: SendSignal,
        *,
        local_tracks: TrackSource | None = None,
        connection_factory: ConnectionFactory | None = None,
        on_remote_feed: FeedListener | None = None,
    ) -> None:
        self.self_id = self_id
        self._send_signal = send_signal
        self._local_tracks = local_tracks or (lambda: [])
        self._connection_factory = connection_factory or (lambda: create_peer_connection([]))
        self._on_remote_feed = on_remote_feed
        self._sessions: Dict[str, PeerSession] = {}
        self._departed: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def sessions(self) -> Dict[str, PeerSession]:
        return dict(self._sessions)

    def get(self, target_id: str) -> PeerSession | None:
        return self._sessions.get(target_id)

    def preferred_role(self, target_id: str) -> PeerRole:
        return PeerRole.INITIATOR if self.self_id < target_id else PeerRole.RESPONDER

    async def ensure_session(self, target_id: str, role: PeerRole | None = None) -> PeerSession:
        """Return the session for ``target_id``, creating it at most once."""

        if target_id == self.self_id:
            raise ValueError("Cannot open a peer session to self")
        async with self._lock:
            self._departed.discard(target_id)
            return self._ensure_locked(target_id, role)

    async def on_directory_participant(self, participant_id: str) -> None:
        if participant_id == self.self_id:
            return
        async with self._lock:
            self._departed.discard(participant_id)
            if participant_id in self._sessions:
                return
            session = self._ensure_locked(participant_id, None)
        logger.info("Peer %s observed in directory; role=%s", participant_id, session.role.value)

    async def on_signal_message(self, message: SignalMessage) -> None:
        """Queue a signal on the sender's session without waiting for it to apply."""

        if message.recipient != self.self_id or message.sender == self.self_id:
            return
        async with self._lock:
            if message.sender in self._departed:
                logger.debug("Ignoring %s from departed peer %s", message.type, message.sender)
                return
            session = self._sessions.get(message.sender)
            if session is None:
                if isinstance(message, AnswerSignal):
                    logger.debug("Ignoring answer from %s without a session", message.sender)
                    return
                role = PeerRole.RESPONDER if isinstance(message, OfferSignal) else None
                session = self._ensure_locked(message.sender, role)
            session.inbox.put_nowait(message)

    async def close(self, target_id: str) -> None:
        """Close the session to a departed peer; later signals from it are dropped."""

        async with self._lock:
            self._departed.add(target_id)
            session = self._sessions.pop(target_id, None)
        if session is not None:
            await self._teardown(session)

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._departed.update(self._sessions)
            self._sessions.clear()
        results = await asyncio.gather(*(self._teardown(session) for session in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning("Closing session to %s failed: %s", session.target_id, result)

    async def wait_idle(self) -> None:
        """Wait until every session has processed its queued work."""

        for session in list(self._sessions.values()):
            if not session.closed:
                await session.inbox.join()

    def _ensure_locked(self, target_id: str, role: PeerRole | None) -> PeerSession:
        existing = self._sessions.get(target_id)
        if existing is not None:
            return existing

        session = PeerSession(target_id=target_id, role=role or self.preferred_role(target_id), pc=None)
        self._attach_connection(session)
        session.worker = asyncio.create_task(self._run(session), name=f"peer-{target_id}")
        self._sessions[target_id] = session
        if session.role is PeerRole.INITIATOR:
            session.inbox.put_nowait(_Negotiate())
        return session

    def _attach_connection(self, session: PeerSession) -> None:
        pc = self._connection_factory()
        session.pc = pc
        session.local_tracks = list(self._local_tracks())
        for track in session.local_tracks:
            pc.addTrack(track)

        # Transport callbacks only enqueue; the worker applies them in order.
        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            session.inbox.put_nowait(_TransportEvent(pc, "track", track))

        @pc.on("connectionstatechange")
        def on_connection_state_change() -> None:
            session.inbox.put_nowait(_TransportEvent(pc, "connection", pc.connectionState))

        # aiortc bundles candidates into the SDP; trickling transports emit them here.
        @pc.on("icecandidate")
        def on_ice_candidate(candidate: Any) -> None:
            if candidate is not None:
                session.inbox.put_nowait(_TransportEvent(pc, "candidate", candidate))

    async def _run(self, session: PeerSession) -> None:
        while True:
            item = await session.inbox.get()
            try:
                if not session.closed:
                    await self._apply(session, item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - a failed step leaves the session where it was
                session.last_error = f"{type(exc).__name__}: {exc}"
                logger.exception("Peer %s: failed to apply %s", session.target_id, type(item).__name__)
            finally:
                session.inbox.task_done()

    async def _apply(self, session: PeerSession, item: _InboxItem) -> None:
        if isinstance(item, _Negotiate):
            await self._send_offer(session)
        elif isinstance(item, OfferSignal):
            await self._accept_offer(session, item)
        elif isinstance(item, AnswerSignal):
            await self._accept_answer(session, item)
        elif isinstance(item, CandidateSignal):
            await self._accept_candidate(session, item.payload)
        elif isinstance(item, _TransportEvent):
            if item.pc is not session.pc:
                return
            await self._on_transport_event(session, item)

    async def _send_offer(self, session: PeerSession) -> None:
        if session.state is not HandshakeState.NEW:
            return
        pc = session.pc
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        if session.closed or pc is not session.pc:
            return
        session.state = HandshakeState.HAVE_LOCAL_OFFER
        _record_step(session, "local-offer")
        description = SessionDescription(sdp=pc.localDescription.sdp, type="offer")
        await self._send(session, OfferSignal(sender=self.self_id, recipient=session.target_id, payload=description))

    async def _accept_offer(self, session: PeerSession, message: OfferSignal) -> None:
        if session.state is HandshakeState.HAVE_LOCAL_OFFER and self.self_id < session.target_id:
            logger.info("Offer collision with %s; keeping local offer", session.target_id)
            return
        if session.state is not HandshakeState.NEW:
            # Last offer wins: rebuild the transport on the same session object.
            logger.info("Replacing %s transport for new offer from %s", session.state.value, session.target_id)
            await self._reset_connection(session)
        session.role = PeerRole.RESPONDER

        pc = session.pc
        await pc.setRemoteDescription(RTCSessionDescription(sdp=message.payload.sdp, type="offer"))
        if session.closed or pc is not session.pc:
            return
        session.state = HandshakeState.HAVE_REMOTE_OFFER
        _record_step(session, "remote-offer")
        await self._flush_candidates(session)

        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        if session.closed or pc is not session.pc:
            return
        session.state = HandshakeState.HAVE_LOCAL_ANSWER
        _record_step(session, "local-answer")
        description = SessionDescription(sdp=pc.localDescription.sdp, type="answer")
        await self._send(session, AnswerSignal(sender=self.self_id, recipient=session.target_id, payload=description))

    async def _accept_answer(self, session: PeerSession, message: AnswerSignal) -> None:
        if session.state is not HandshakeState.HAVE_LOCAL_OFFER:
            logger.debug("Ignoring answer from %s in state %s", session.target_id, session.state.value)
            return
        pc = session.pc
        await pc.setRemoteDescription(RTCSessionDescription(sdp=message.payload.sdp, type="answer"))
        if session.closed or pc is not session.pc:
            return
        session.state = HandshakeState.HAVE_REMOTE_ANSWER
        _record_step(session, "remote-answer")
        await self._flush_candidates(session)
        if pc.connectionState == "connected":
            self._mark_connected(session)

    async def _accept_candidate(self, session: PeerSession, payload: IceCandidatePayload) -> None:
        if session.state in (HandshakeState.FAILED, HandshakeState.CLOSED):
            logger.debug("Dropping candidate from %s in state %s", session.target_id, session.state.value)
            return
        if not session.has_remote_description:
            session.pending_candidates.append(payload)
            return
        await self._add_candidate(session, payload)

    async def _flush_candidates(self, session: PeerSession) -> None:
        pending, session.pending_candidates = session.pending_candidates, []
        for payload in pending:
            await self._add_candidate(session, payload)

    async def _add_candidate(self, session: PeerSession, payload: IceCandidatePayload) -> None:
        candidate = candidate_from_payload(payload)
        if candidate is None:
            return
        try:
            await session.pc.addIceCandidate(candidate)
        except Exception as exc:  # noqa: BLE001 - a bad candidate must not end the session
            logger.warning("Peer %s: failed to add ICE candidate: %s", session.target_id, exc)
            return
        _record_step(session, "remote-candidate")

    async def _on_transport_event(self, session: PeerSession, event: _TransportEvent) -> None:
        if event.kind == "track":
            first = not session.remote_tracks
            session.remote_tracks.append(event.value)
            if first:
                logger.info("Remote feed available from %s", session.target_id)
                await self._notify_feed(session.target_id, session.remote_feed)
        elif event.kind == "connection":
            if event.value == "connected" and session.has_remote_description:
                self._mark_connected(session)
            elif event.value == "failed":
                logger.warning("Peer session to %s failed; not retrying", session.target_id)
                had_feed = session.remote_feed is not None
                session.state = HandshakeState.FAILED
                session.pending_candidates.clear()
                if had_feed:
                    await self._notify_feed(session.target_id, None)
        elif event.kind == "candidate":
            payload = candidate_to_payload(event.value)
            await self._send(session, CandidateSignal(sender=self.self_id, recipient=session.target_id, payload=payload))

    def _mark_connected(self, session: PeerSession) -> None:
        if session.state is not HandshakeState.CONNECTED:
            session.state = HandshakeState.CONNECTED
            logger.info("Peer session to %s connected", session.target_id)

    async def _send(self, session: PeerSession, message: SignalMessage) -> None:
        if session.closed:
            return
        try:
            await self._send_signal(message)
        except Exception as exc:  # noqa: BLE001 - no retry; the session stays in its current state
            session.last_error = f"send {message.type} failed: {exc}"
            logger.error("Peer %s: could not send %s: %s", session.target_id, message.type, exc)

    async def _reset_connection(self, session: PeerSession) -> None:
        old_pc = session.pc
        had_feed = session.remote_feed is not None
        self._attach_connection(session)
        session.state = HandshakeState.NEW
        session.remote_tracks = []
        await _close_quietly(old_pc, session.target_id)
        if had_feed:
            await self._notify_feed(session.target_id, None)

    async def _teardown(self, session: PeerSession) -> None:
        if session.closed:
            return
        had_feed = session.remote_feed is not None
        session.closed = True
        session.state = HandshakeState.CLOSED
        if session.worker is not None and session.worker is not asyncio.current_task():
            session.worker.cancel()
            with suppress(asyncio.CancelledError):
                await session.worker
        while not session.inbox.empty():
            session.inbox.get_nowait()
            session.inbox.task_done()
        await _close_quietly(session.pc, session.target_id)
        session.pending_candidates.clear()
        logger.info("Peer session to %s closed", session.target_id)
        if had_feed:
            await self._notify_feed(session.target_id, None)

    async def _notify_feed(self, target_id: str, feed: RemoteFeed | None) -> None:
        if self._on_remote_feed is None:
            return
        try:
            await self._on_remote_feed(target_id, feed)
        except Exception:  # noqa: BLE001
            logger.exception("Remote feed listener failed for %s", target_id)


async def _close_quietly(pc: Any, target_id: str) -> None:
    if pc is None:
        return
    try:
        await pc.close()
    except Exception as exc:  # noqa: BLE001 - closing is best effort
        logger.warning("Closing transport to %s failed: %s", target_id, exc)


def _record_step(session: PeerSession, step: str) -> None:
    session.applied.append(step)
    del session.applied[:-APPLIED_HISTORY]
