from __future__ import annotations

import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from meshroom.core.config import Settings
from meshroom.services.media import CaptureError, LocalMedia, ToggleableTrack, open_capture


@pytest.mark.asyncio
async def test_disabled_video_track_sends_black_frames():
    track = ToggleableTrack(VideoStreamTrack(), enabled=False)

    frame = await track.recv()

    assert track.kind == "video"
    assert (frame.width, frame.height) == (640, 480)
    assert set(bytes(frame.planes[0])) == {16}

    track.enabled = True
    live = await track.recv()
    assert set(bytes(live.planes[0])) != {16}
    track.stop()


@pytest.mark.asyncio
async def test_disabled_audio_track_sends_silence():
    track = ToggleableTrack(AudioStreamTrack(), enabled=False)

    frame = await track.recv()

    assert track.kind == "audio"
    assert frame.sample_rate == 8000
    assert set(bytes(frame.planes[0])) == {0}
    track.stop()


@pytest.mark.asyncio
async def test_stopped_tracks_are_not_offered_to_peers():
    media = LocalMedia(audio=ToggleableTrack(AudioStreamTrack()), video=ToggleableTrack(VideoStreamTrack()))

    assert [track.kind for track in media.tracks_for_peer()] == ["audio", "video"]

    media.audio.stop()

    assert media.live_tracks() == [media.video]
    assert [track.kind for track in media.tracks_for_peer()] == ["video"]
    media.stop()
    assert media.live_tracks() == []


@pytest.mark.asyncio
async def test_open_capture_respects_capture_mode():
    with pytest.raises(CaptureError):
        await open_capture(Settings(capture_mode="none"))

    media = await open_capture(Settings(capture_mode="synthetic"))
    assert media.audio is not None and media.video is not None
    media.stop()


@pytest.mark.asyncio
async def test_open_capture_fails_when_no_device_opens(monkeypatch):
    async def broken_player(device, fmt, options=None):
        raise OSError(f"{device} busy")

    monkeypatch.setattr("meshroom.services.media._open_player", broken_player)

    with pytest.raises(CaptureError, match="No camera or microphone"):
        await open_capture(Settings(capture_mode="device"))
