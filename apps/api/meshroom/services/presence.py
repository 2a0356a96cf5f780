"""Mirror local media flags into the directory and react to other members."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict

from ..schemas.presence import MediaFlags, ParticipantRecord
from .directory import SessionDirectory
from .peers import PeerConnectionManager

logger = logging.getLogger(__name__)

RosterListener = Callable[[list[ParticipantRecord]], Awaitable[None]]


class PresenceSynchronizer:
    """Keep the directory record of ``participant`` current and diff the roster."""

    def __init__(
        self,
        directory: SessionDirectory,
        peers: PeerConnectionManager,
        participant: ParticipantRecord,
        *,
        on_roster: RosterListener | None = None,
    ) -> None:
        self._directory = directory
        self._peers = peers
        self.participant = participant
        self._on_roster = on_roster
        self._known: Dict[str, ParticipantRecord] = {}

    @property
    def participants(self) -> list[ParticipantRecord]:
        return list(self._known.values())

    async def publish_self(self, flags: MediaFlags | None = None) -> ParticipantRecord:
        """Upsert the local record, optionally with new flags."""

        record = self.participant if flags is None else self.participant.with_flags(flags)
        self.participant = await self._directory.publish(record)
        return self.participant

    async def on_directory_snapshot(self, records: list[ParticipantRecord]) -> None:
        current = {record.id: record for record in records}
        self_id = self.participant.id
        arrivals = [pid for pid in current if pid not in self._known and pid != self_id]
        departures = [pid for pid in self._known if pid not in current and pid != self_id]
        self._known = current

        for participant_id in departures:
            logger.info("Participant %s left the directory", participant_id)
            await self._peers.close(participant_id)
        for participant_id in arrivals:
            await self._peers.on_directory_participant(participant_id)

        if self._on_roster is not None:
            await self._on_roster(list(current.values()))
