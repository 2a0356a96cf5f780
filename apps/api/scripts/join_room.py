"""Join a room as a headless participant and log who is present until interrupted."""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from meshroom.core.config import settings
from meshroom.schemas.presence import ParticipantRecord, new_participant_id
from meshroom.services.remote_store import RemoteDocumentStore
from meshroom.services.room import ActiveParticipant, RoomSession

logger = logging.getLogger("join_room")


def parse_args() -> argparse.Namespace:
	parser = argparse.ArgumentParser(description=__doc__)
	parser.add_argument("room", help="Room name to join")
	parser.add_argument("--name", default="Headless participant", help="Display name")
	parser.add_argument("--store-url", default=settings.store_url, help="Room store websocket base URL")
	parser.add_argument("--unmuted", action="store_true", help="Join with the microphone enabled")
	parser.add_argument("--camera", action="store_true", help="Join with the camera enabled")
	parser.add_argument("--ai", action="store_true", help="Mark this participant as an AI agent")
	return parser.parse_args()


async def log_roster(participants: list[ActiveParticipant]) -> None:
	for entry in participants:
		record = entry.record
		logger.info(
			"%s%s muted=%s video_off=%s sharing=%s feed=%s",
			record.name,
			" (you)" if entry.is_local else "",
			record.is_muted,
			record.is_video_off,
			record.is_screen_sharing,
			"yes" if entry.feed else "no",
		)


async def main() -> None:
	args = parse_args()
	logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

	store = RemoteDocumentStore(args.store_url)
	session = RoomSession(store, on_update=log_roster)
	participant = ParticipantRecord(
		id=new_participant_id(),
		name=args.name,
		is_muted=not args.unmuted,
		is_video_off=not args.camera,
		is_ai=args.ai,
	)

	stop = asyncio.Event()
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		loop.add_signal_handler(sig, stop.set)

	await session.join(args.room, participant)
	if session.capture_error is not None:
		logger.warning("No local media: %s", session.capture_error)
	try:
		await stop.wait()
	finally:
		await session.leave()
		await store.close()


if __name__ == "__main__":
	asyncio.run(main())
