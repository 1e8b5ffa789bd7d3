"""Shared fakes for signaling tests.

Provides:
- FakeTransport: RTCPeerConnection stand-in recording every call
- LoopbackNetwork: the real Relay wired to in-process orchestrators
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack

from teleroom.client.media import LocalMedia
from teleroom.client.orchestrator import SessionOrchestrator
from teleroom.routers.signaling import handle_message
from teleroom.services.relay import Relay


def candidate_line(foundation: int, port: int = 50000) -> str:
    return f"candidate:{foundation} 1 udp 2130706431 192.168.1.{foundation} {port} typ host"


class FakeTransport:
    """Records what a PeerSession does to its RTCPeerConnection."""

    def __init__(self, name: str = "pc") -> None:
        self.name = name
        self.handlers: Dict[str, Callable] = {}
        self.tracks: List[Any] = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.added_candidates: List[Any] = []
        self.rejected_foundations: set = set()
        self.offers_created = 0
        self.close_calls = 0
        self.fail_create_offer = False

    def on(self, event: str, handler: Callable) -> None:
        self.handlers[event] = handler

    async def emit(self, event: str, *args: Any) -> None:
        result = self.handlers[event](*args)
        if inspect.isawaitable(result):
            await result

    def addTrack(self, track: Any) -> None:
        self.tracks.append(track)

    async def createOffer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        if self.fail_create_offer:
            raise RuntimeError("offer failed")
        self.offers_created += 1
        return RTCSessionDescription(sdp=f"v=0 offer from {self.name}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=f"v=0 answer from {self.name}", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.localDescription = description
        self._maybe_connect()

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.remoteDescription = description
        self._maybe_connect()

    async def addIceCandidate(self, candidate: Any) -> None:
        await asyncio.sleep(0)
        if candidate.foundation in self.rejected_foundations:
            raise ValueError("stale candidate")
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        self.close_calls += 1
        self.connectionState = "closed"

    def _maybe_connect(self) -> None:
        if self.localDescription and self.remoteDescription and self.connectionState == "new":
            self.connectionState = "connected"
            handler = self.handlers.get("connectionstatechange")
            if handler is not None:
                asyncio.ensure_future(handler())


def make_media() -> LocalMedia:
    return LocalMedia(audio=AudioStreamTrack(), video=VideoStreamTrack())


class RecordingChannel:
    """SignalingChannel stand-in that keeps what was sent."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.closed = False

    async def connect(self) -> None:
        pass

    async def send(self, envelope: Any) -> None:
        self.sent.append(envelope.to_wire() if hasattr(envelope, "to_wire") else envelope)

    async def close(self) -> None:
        self.closed = True

    def sent_of(self, kind: str) -> List[dict]:
        return [m for m in self.sent if m["type"] == kind]


class _ServerSocket:
    """What the relay sees as a websocket; delivers to an orchestrator."""

    def __init__(self, network: "LoopbackNetwork", client: "LoopbackClient") -> None:
        self.network = network
        self.client = client
        self.received: List[dict] = []

    async def accept(self) -> None:
        pass

    async def send_json(self, message: dict) -> None:
        self.received.append(message)
        self.network.deliver(self.client, message)


class LoopbackChannel(RecordingChannel):
    def __init__(self, network: "LoopbackNetwork") -> None:
        super().__init__()
        self.network = network
        self.client: Optional["LoopbackClient"] = None

    async def send(self, envelope: Any) -> None:
        await super().send(envelope)
        await handle_message(self.network.relay, self.client.client_id, self.sent[-1])


class LoopbackClient:
    def __init__(self, orchestrator: SessionOrchestrator, channel: LoopbackChannel) -> None:
        self.orchestrator = orchestrator
        self.channel = channel
        self.client_id: Optional[str] = None
        self.transports: List[FakeTransport] = []
        self.socket: Optional[_ServerSocket] = None


class LoopbackNetwork:
    """Real Relay and RoomRegistry, fake sockets, fake peer connections."""

    def __init__(self) -> None:
        self.relay = Relay()
        self._pending: set = set()

    def deliver(self, client: LoopbackClient, message: dict) -> None:
        task = asyncio.ensure_future(client.orchestrator.handle_envelope(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))
            # connection-state callbacks are scheduled separately
            for _ in range(5):
                await asyncio.sleep(0)

    async def join(self, room_id: str, email: str, media_factory: Callable = make_media) -> LoopbackClient:
        channel = LoopbackChannel(self)
        client: Optional[LoopbackClient] = None

        def transport_factory() -> FakeTransport:
            transport = FakeTransport(name=email)
            client.transports.append(transport)
            return transport

        orchestrator = SessionOrchestrator(room_id, email, channel, media_factory, transport_factory)
        client = LoopbackClient(orchestrator, channel)
        channel.client = client
        client.socket = _ServerSocket(self, client)
        client.client_id = await self.relay.connect(client.socket)
        await self.drain()
        return client

    async def drop(self, client: LoopbackClient) -> None:
        await self.relay.disconnect(client.client_id)
        await self.drain()


@pytest.fixture
def network() -> LoopbackNetwork:
    return LoopbackNetwork()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()
