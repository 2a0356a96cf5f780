"""Room session: one participant's runtime inside a mesh room."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..core.config import Settings, settings as default_settings
from ..schemas.chat import ChatMessage
from ..schemas.presence import MediaFlag, ParticipantRecord
from .chat import ChatListener, ChatLog
from .directory import SessionDirectory
from .media import (
    CaptureError,
    CaptureFactory,
    LocalMedia,
    ScreenCaptureFactory,
    ScreenShare,
    open_capture,
    open_screen_capture,
)
from .peers import ConnectionFactory, PeerConnectionManager, RemoteFeed, create_peer_connection
from .presence import PresenceSynchronizer
from .signal_channel import SignalChannel
from .store import DocumentStore, Unsubscribe, sanitize_room_id

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ActiveParticipant:
    record: ParticipantRecord
    feed: RemoteFeed | None
    is_local: bool


UpdateListener = Callable[[list[ActiveParticipant]], Awaitable[None]]


class RoomSession:
    """Compose directory, signal channel, peers and local capture for one room."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        config: Settings | None = None,
        capture: CaptureFactory | None = None,
        screen_capture: ScreenCaptureFactory | None = None,
        connection_factory: ConnectionFactory | None = None,
        on_update: UpdateListener | None = None,
    ) -> None:
        self._store = store
        self._config = config or default_settings
        self._capture = capture or (lambda: open_capture(self._config))
        self._screen_capture = screen_capture or (lambda: open_screen_capture(self._config))
        self._connection_factory = connection_factory or (lambda: create_peer_connection(self._config.ice_servers))
        self._on_update = on_update

        self.room_id: str | None = None
        self.room_key: str | None = None
        self.local_media: LocalMedia | None = None
        self.capture_error: CaptureError | None = None
        self.screen_share: ScreenShare | None = None
        self.peers: PeerConnectionManager | None = None
        self.presence: PresenceSynchronizer | None = None
        self.chat: ChatLog | None = None
        self._directory: SessionDirectory | None = None

        self._feeds: Dict[str, RemoteFeed] = {}
        self._unsubscribers: list[Unsubscribe] = []
        self._joined = False

    @property
    def joined(self) -> bool:
        return self._joined

    @property
    def participant(self) -> ParticipantRecord:
        if self.presence is None:
            raise RuntimeError("Room session has not been joined")
        return self.presence.participant

    async def join(self, room_id: str, participant: ParticipantRecord) -> None:
        if self._joined:
            raise RuntimeError("Room session already joined")

        self.room_id = room_id
        self.room_key = sanitize_room_id(room_id)

        try:
            self.local_media = await self._capture()
        except CaptureError as exc:
            self.capture_error = exc
            self.local_media = None
            logger.warning("Joining %s without local media: %s", self.room_key, exc)
        self._apply_track_flags(participant)

        directory = SessionDirectory(self._store, self.room_key)
        channel = SignalChannel(self._store, self.room_key, participant.id)
        self.chat = ChatLog(self._store, self.room_key)
        self.peers = PeerConnectionManager(
            participant.id,
            channel.send,
            local_tracks=self._tracks_for_peer,
            connection_factory=self._connection_factory,
            on_remote_feed=self._on_remote_feed,
        )
        self.presence = PresenceSynchronizer(directory, self.peers, participant, on_roster=self._on_roster)
        self._directory = directory
        self._joined = True

        try:
            await self.presence.publish_self()
            self._unsubscribers.append(await directory.subscribe(self.presence.on_directory_snapshot))
            self._unsubscribers.append(await channel.subscribe(self.peers.on_signal_message))
        except Exception:
            logger.exception("Joining %s failed; rolling back", self.room_key)
            await self.leave()
            raise
        logger.info("Participant %s joined room %s", participant.id, self.room_key)

    async def leave(self) -> None:
        """Tear everything down; each step runs even when an earlier one fails."""

        if not self._joined:
            return
        self._joined = False
        participant_id = self.participant.id

        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            await self._best_effort("unsubscribe", unsubscribe())
        if self._directory is not None:
            await self._best_effort("remove presence", self._directory.remove(participant_id))
        if self.peers is not None:
            await self._best_effort("close peer sessions", self.peers.close_all())
        if self.screen_share is not None:
            await self._best_effort("stop screen share", self._release_screen_share())
        if self.local_media is not None:
            try:
                self.local_media.stop()
            except Exception:  # noqa: BLE001
                logger.exception("Stopping local capture failed")
            self.local_media = None
        self._feeds.clear()
        logger.info("Participant %s left room %s", participant_id, self.room_key)

    async def set_flag(self, flag: MediaFlag, value: bool) -> ParticipantRecord:
        """Flip a media flag in place and republish; sessions are not renegotiated."""

        presence = self._require_presence()
        flags = presence.participant.flags.with_flag(flag, value)
        self._apply_track_flags(flags)
        try:
            return await presence.publish_self(flags)
        except Exception:
            self._apply_track_flags(presence.participant)
            raise

    async def start_screen_share(self) -> ScreenShare:
        """Open a screen capture for local preview and raise the sharing flag.

        The screen track is not sent to peers; existing sessions keep the camera.
        """

        self._require_presence()
        if self.screen_share is not None:
            return self.screen_share

        share = await self._screen_capture()
        self.screen_share = share
        logger.warning("Screen share in %s is local only; peer sessions keep the camera track", self.room_key)

        @share.track.on("ended")
        async def on_ended() -> None:
            if self.screen_share is share and self._joined:
                await self.stop_screen_share()

        try:
            await self.set_flag(MediaFlag.SCREEN_SHARING, True)
        except Exception:
            await self._release_screen_share()
            raise
        return share

    async def stop_screen_share(self) -> None:
        self._require_presence()
        if self.screen_share is None:
            return
        await self._release_screen_share()
        await self.set_flag(MediaFlag.SCREEN_SHARING, False)

    async def send_chat(self, text: str) -> ChatMessage:
        if self.chat is None or not self._joined:
            raise RuntimeError("Room session has not been joined")
        participant = self.participant
        return await self.chat.send(participant.name, text, is_ai=participant.is_ai)

    async def subscribe_chat(self, listener: ChatListener) -> Unsubscribe:
        if self.chat is None or not self._joined:
            raise RuntimeError("Room session has not been joined")
        unsubscribe = await self.chat.subscribe(listener)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    def active_participants(self) -> list[ActiveParticipant]:
        """Directory members in directory order, each with its remote feed if any."""

        if self.presence is None or not self._joined:
            return []
        self_id = self.presence.participant.id
        return [
            ActiveParticipant(
                record=record,
                feed=None if record.id == self_id else self._feeds.get(record.id),
                is_local=record.id == self_id,
            )
            for record in self.presence.participants
        ]

    def invite_url(self, base_url: str) -> str:
        """Return ``base_url`` with this room set as the ``room`` query parameter."""

        if self.room_id is None:
            raise RuntimeError("Room session has not been joined")
        parts = urlsplit(base_url)
        query = [(key, value) for key, value in parse_qsl(parts.query) if key != "room"]
        query.append(("room", self.room_id))
        return urlunsplit(parts._replace(query=urlencode(query)))

    def _tracks_for_peer(self) -> list[Any]:
        if self.local_media is None:
            return []
        return self.local_media.tracks_for_peer()

    def _apply_track_flags(self, flags: Any) -> None:
        if self.local_media is None:
            return
        self.local_media.set_audio_enabled(not flags.is_muted)
        self.local_media.set_video_enabled(not flags.is_video_off)

    async def _release_screen_share(self) -> None:
        share, self.screen_share = self.screen_share, None
        if share is not None:
            share.stop()

    async def _on_roster(self, records: list[ParticipantRecord]) -> None:
        present = {record.id for record in records}
        for participant_id in [pid for pid in self._feeds if pid not in present]:
            self._feeds.pop(participant_id, None)
        await self._notify()

    async def _on_remote_feed(self, participant_id: str, feed: RemoteFeed | None) -> None:
        if feed is None:
            self._feeds.pop(participant_id, None)
        else:
            self._feeds[participant_id] = feed
        await self._notify()

    async def _notify(self) -> None:
        if self._on_update is None:
            return
        try:
            await self._on_update(self.active_participants())
        except Exception:  # noqa: BLE001
            logger.exception("Room update listener failed")

    def _require_presence(self) -> PresenceSynchronizer:
        if self.presence is None or not self._joined:
            raise RuntimeError("Room session has not been joined")
        return self.presence

    @staticmethod
    async def _best_effort(step: str, operation: Awaitable[Any]) -> None:
        try:
            await operation
        except Exception:  # noqa: BLE001 - leave must finish every step
            logger.exception("Leave step %r failed", step)
