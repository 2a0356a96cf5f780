"""Local capture lifecycle.

One capture is shared by every peer session: each session gets its own
``MediaRelay`` proxy of the same toggleable track, so sessions never own or
stop the capture. Only the room session stops it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import AudioFrame, VideoFrame

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class CaptureError(RuntimeError):
    """Raised when no local capture source could be opened."""


class ToggleableTrack(MediaStreamTrack):
    """Relay frames from a source track, blanking them while disabled."""

    def __init__(self, source: MediaStreamTrack, *, enabled: bool = True) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = enabled
        self._source = source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return _blank_like(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


def _blank_like(frame: Any) -> Any:
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    elif isinstance(frame, VideoFrame):
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
        # Black in limited-range YUV.
        for plane, level in zip(blank.planes, (16, 128, 128)):
            plane.update(bytes([level]) * plane.buffer_size)
    else:
        return frame
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


@dataclass(eq=False)
class LocalMedia:
    """Capture handle owned by the room session."""

    audio: ToggleableTrack | None = None
    video: ToggleableTrack | None = None
    players: list[Any] = field(default_factory=list)
    relay: MediaRelay = field(default_factory=MediaRelay)

    def set_audio_enabled(self, enabled: bool) -> None:
        if self.audio is not None:
            self.audio.enabled = enabled

    def set_video_enabled(self, enabled: bool) -> None:
        if self.video is not None:
            self.video.enabled = enabled

    def live_tracks(self) -> list[MediaStreamTrack]:
        return [track for track in (self.audio, self.video) if track is not None and track.readyState == "live"]

    def tracks_for_peer(self) -> list[MediaStreamTrack]:
        """Return per-session proxies of every live capture track."""

        return [self.relay.subscribe(track) for track in self.live_tracks()]

    def stop(self) -> None:
        for track in (self.audio, self.video):
            if track is not None:
                track.stop()


@dataclass(eq=False)
class ScreenShare:
    """Secondary capture for screen sharing.

    ``broadcast`` is always ``False``: the track is available for local preview
    only and is not sent over existing peer sessions.
    """

    track: MediaStreamTrack
    player: Any = None
    broadcast: bool = False

    def stop(self) -> None:
        self.track.stop()


CaptureFactory = Callable[[], Awaitable[LocalMedia]]
ScreenCaptureFactory = Callable[[], Awaitable[ScreenShare]]


async def _open_player(device: str, fmt: str, options: dict[str, str] | None = None) -> MediaPlayer:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: MediaPlayer(device, format=fmt or None, options=options))


async def open_capture(config: Settings | None = None) -> LocalMedia:
    """Open the configured camera and microphone.

    Either source may be missing; :class:`CaptureError` is raised only when
    neither could be opened.
    """

    cfg = config or default_settings
    if cfg.capture_mode == "none":
        raise CaptureError("Local capture disabled by configuration")

    if cfg.capture_mode == "synthetic":
        return LocalMedia(audio=ToggleableTrack(AudioStreamTrack()), video=ToggleableTrack(VideoStreamTrack()))

    media = LocalMedia()
    if cfg.capture_video_device:
        try:
            player = await _open_player(cfg.capture_video_device, cfg.capture_video_format)
        except Exception as exc:  # noqa: BLE001 - av raises a family of device errors
            logger.warning("Camera %s unavailable: %s", cfg.capture_video_device, exc)
        else:
            media.players.append(player)
            if player.video is not None:
                media.video = ToggleableTrack(player.video)

    if cfg.capture_audio_device:
        try:
            player = await _open_player(cfg.capture_audio_device, cfg.capture_audio_format)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Microphone %s unavailable: %s", cfg.capture_audio_device, exc)
        else:
            media.players.append(player)
            if player.audio is not None:
                media.audio = ToggleableTrack(player.audio)

    if media.audio is None and media.video is None:
        raise CaptureError("No camera or microphone could be opened")
    return media


async def open_screen_capture(config: Settings | None = None) -> ScreenShare:
    cfg = config or default_settings
    if cfg.capture_mode == "synthetic":
        return ScreenShare(track=VideoStreamTrack())
    try:
        player = await _open_player(cfg.screen_capture_device, cfg.screen_capture_format)
    except Exception as exc:  # noqa: BLE001
        raise CaptureError(f"Screen capture {cfg.screen_capture_device} unavailable") from exc
    if player.video is None:
        raise CaptureError("Screen capture produced no video track")
    return ScreenShare(track=player.video, player=player)
