"""Local capture handle shared by every peer session."""

import logging
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av.error import FFmpegError

from teleroom.errors import MediaCaptureError

logger = logging.getLogger(__name__)


class ToggleableTrack(MediaStreamTrack):
    """Wraps a capture track with an ``enabled`` switch.

    Disabled tracks keep producing frames, blanked (silence / black picture),
    so the remote side keeps its timing.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self):
        frame = await self._source.recv()
        if not self.enabled:
            for index, plane in enumerate(frame.planes):
                # Y=0, U=V=128 is black; audio silence is all zeros
                fill = 128 if self.kind == "video" and index > 0 else 0
                plane.update(bytes([fill]) * plane.buffer_size)
        return frame

    def stop(self):
        super().stop()
        self._source.stop()


class LocalMedia:
    def __init__(self, audio: Optional[MediaStreamTrack] = None, video: Optional[MediaStreamTrack] = None,
                 player: Optional[MediaPlayer] = None):
        self.audio = ToggleableTrack(audio) if audio is not None else None
        self.video = ToggleableTrack(video) if video is not None else None
        self._player = player
        # Each peer connection pulls frames on its own; the relay fans one capture out to all of them
        self._relay = MediaRelay()

    @classmethod
    def open(cls, file: str, format: Optional[str] = None, options: Optional[dict] = None) -> "LocalMedia":
        """Open a capture device (or file) through ffmpeg.

        Examples: ``open("/dev/video0", format="v4l2")``,
        ``open("default:none", format="avfoundation")``.
        """
        logger.info("Attempting to access media devices (%s)...", file)
        try:
            player = MediaPlayer(file, format=format, options=options or {})
        except (FFmpegError, OSError) as e:
            raise MediaCaptureError(f"Error accessing media devices: {e}") from e
        if player.audio is None and player.video is None:
            raise MediaCaptureError(f"Error accessing media devices: {file} has no audio or video")
        logger.info("Media devices accessed successfully")
        return cls(audio=player.audio, video=player.video, player=player)

    @property
    def tracks(self) -> List[ToggleableTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    def tracks_for_peer(self) -> List[MediaStreamTrack]:
        return [self._relay.subscribe(track) for track in self.tracks]

    def toggle_audio(self) -> Optional[bool]:
        """Flip the microphone. Returns True when now muted, None without audio."""
        if self.audio is None:
            return None
        self.audio.enabled = not self.audio.enabled
        return not self.audio.enabled

    def toggle_video(self) -> Optional[bool]:
        """Flip the camera. Returns True when now off, None without video."""
        if self.video is None:
            return None
        self.video.enabled = not self.video.enabled
        return not self.video.enabled

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
