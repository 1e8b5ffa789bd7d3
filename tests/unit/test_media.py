"""Unit tests for the shared local capture handle."""

from unittest.mock import patch

import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from teleroom.client.media import LocalMedia
from teleroom.errors import MediaCaptureError


@pytest.mark.asyncio
async def test_disabled_audio_is_silent() -> None:
    media = LocalMedia(audio=AudioStreamTrack())

    assert media.toggle_audio() is True
    frame = await media.audio.recv()

    assert all(b == 0 for b in bytes(frame.planes[0]))


@pytest.mark.asyncio
async def test_disabled_video_is_black() -> None:
    media = LocalMedia(video=VideoStreamTrack())
    media.toggle_video()

    frame = await media.video.recv()

    assert set(bytes(frame.planes[0])) == {0}
    assert set(bytes(frame.planes[1])) == {128}
    assert set(bytes(frame.planes[2])) == {128}


def test_toggle_without_track() -> None:
    media = LocalMedia(video=VideoStreamTrack())

    assert media.toggle_audio() is None
    assert media.toggle_video() is True
    assert media.toggle_video() is False


def test_every_peer_gets_its_own_subscription() -> None:
    media = LocalMedia(audio=AudioStreamTrack(), video=VideoStreamTrack())

    first = media.tracks_for_peer()
    second = media.tracks_for_peer()

    assert [t.kind for t in first] == ["audio", "video"]
    assert {id(t) for t in first}.isdisjoint({id(t) for t in second})


def test_stop_ends_source_tracks() -> None:
    audio, video = AudioStreamTrack(), VideoStreamTrack()
    media = LocalMedia(audio=audio, video=video)

    media.stop()

    assert audio.readyState == "ended"
    assert video.readyState == "ended"
    assert all(t.readyState == "ended" for t in media.tracks)


def test_open_failure_raises_capture_error() -> None:
    with patch("teleroom.client.media.MediaPlayer", side_effect=OSError("No such device")):
        with pytest.raises(MediaCaptureError, match="Error accessing media devices"):
            LocalMedia.open("/dev/video9", format="v4l2")
