"""Headless room participant.

Usage:
    python -m teleroom.client --room r1 --email alice@x.com --device /dev/video0 --format v4l2

Lines typed on stdin are sent as chat. ``/mute``, ``/video`` and ``/quit``
control the session.
"""

import argparse
import asyncio
import logging
import sys

from aiortc.contrib.media import MediaBlackhole

from teleroom.client.media import LocalMedia
from teleroom.client.orchestrator import SessionOrchestrator
from teleroom.client.signaling import SignalingChannel
from teleroom.config import settings

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Join a teleroom room as a headless participant")
    parser.add_argument("--room", required=True, help="Room identifier")
    parser.add_argument("--email", required=True, help="Display label shown to other participants")
    parser.add_argument("--url", default=settings.SIGNALING_URL, help="Relay websocket URL")
    parser.add_argument("--device", required=True, help="Capture device or media file passed to ffmpeg")
    parser.add_argument("--format", default=None, help="ffmpeg input format (v4l2, avfoundation, dshow, ...)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


async def read_commands(orchestrator: SessionOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    while not orchestrator.disconnected:
        raw = await reader.readline()
        if not raw:
            break
        line = raw.decode().rstrip("\n")
        if line == "/quit":
            break
        elif line == "/mute":
            muted = orchestrator.toggle_audio()
            print("Audio muted" if muted else "Audio unmuted")
        elif line == "/video":
            off = orchestrator.toggle_video()
            print("Video off" if off else "Video on")
        elif await orchestrator.send_chat(line):
            print(f"You: {line}")
    await orchestrator.disconnect()


async def main(args: argparse.Namespace) -> int:
    # Remote media is received but not presented; frames must still be drained
    sink = MediaBlackhole()

    def on_remote_track(remote_id, track):
        logger.info("Remote %s track from %s is available", track.kind, remote_id)
        sink.addTrack(track)
        asyncio.ensure_future(sink.start())

    orchestrator = SessionOrchestrator(
        args.room,
        args.email,
        SignalingChannel(args.url),
        media_factory=lambda: LocalMedia.open(args.device, format=args.format),
        on_remote_track=on_remote_track,
        negotiation_timeout=settings.NEGOTIATION_TIMEOUT,
    )
    commands = asyncio.create_task(read_commands(orchestrator))
    try:
        await orchestrator.run()
    finally:
        commands.cancel()
        await sink.stop()

    if orchestrator.status_message:
        print(orchestrator.status_message, file=sys.stderr)
        return 1
    return 0


def cli() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
