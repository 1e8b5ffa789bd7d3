"""Client side of one room membership.

The orchestrator owns the local capture, the signaling channel and the table
of peer sessions (one per remote participant id). Every inbound envelope is
routed here and handed to the session of the participant it comes from.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from teleroom.client.media import LocalMedia
from teleroom.client.peer_session import PeerSession
from teleroom.client.signaling import SignalingChannel
from teleroom.config import ice_servers, settings
from teleroom.errors import MediaCaptureError, ProtocolViolation
from teleroom.models import (
    Answer,
    ChatMessage,
    IceCandidate,
    Join,
    Offer,
    ParticipantJoined,
    ParticipantLeft,
    Welcome,
    parse_envelope,
)

logger = logging.getLogger(__name__)

# Transcript sender for messages this participant wrote
SELF_SENDER = "You"


@dataclass
class ChatEntry:
    sender: str
    message: str


def default_transport_factory() -> RTCPeerConnection:
    servers = []
    for entry in ice_servers(settings):
        servers.append(RTCIceServer(
            urls=entry["urls"],
            username=entry.get("username"),
            credential=entry.get("credential"),
        ))
    return RTCPeerConnection(RTCConfiguration(iceServers=servers))


class SessionOrchestrator:
    def __init__(
        self,
        room_id: str,
        email: str,
        channel: SignalingChannel,
        media_factory: Callable[[], LocalMedia],
        transport_factory: Callable[[], Any] = default_transport_factory,
        *,
        on_remote_track: Optional[Callable[[str, Any], None]] = None,
        negotiation_timeout: float = 0,
    ):
        self.room_id = room_id
        self.email = email
        self.channel = channel
        self.local_id: Optional[str] = None
        self.media: Optional[LocalMedia] = None
        self.peer_sessions: Dict[str, PeerSession] = {}
        self.remote_tracks: Dict[str, List[Any]] = {}
        self.transcript: List[ChatEntry] = []
        self.status_message: Optional[str] = None
        self.disconnected = False

        self._media_factory = media_factory
        self._transport_factory = transport_factory
        self._on_remote_track = on_remote_track
        self._negotiation_timeout = negotiation_timeout
        self._tasks: Set[asyncio.Task] = set()

    @property
    def peers(self) -> Dict[str, Optional[str]]:
        """Remote participants with a live connection, id -> label."""
        return {
            peer_id: session.remote_email
            for peer_id, session in self.peer_sessions.items()
            if session.transport is not None
        }

    async def run(self) -> None:
        """Connect, then process envelopes until the channel drops or disconnect() is called."""
        try:
            await self.channel.connect()
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("Connection error: %s", e)
            self.status_message = f"Connection error: {e}"
            await self.disconnect()
            return

        try:
            async for data in self.channel.messages():
                # Handlers suspend on negotiation; the next envelope must not wait for them
                self._spawn(self.handle_envelope(data))
        except ConnectionClosed as e:
            if not self.disconnected:
                logger.error("Signaling connection lost: %s", e)
                self.status_message = f"Connection error: {e}"
        finally:
            await self.disconnect()

    async def handle_envelope(self, data: dict) -> None:
        if self.disconnected:
            return
        try:
            envelope = parse_envelope(data)
        except ValidationError as e:
            logger.warning("Dropping malformed %s envelope: %s", data.get("type"), e.errors())
            return

        try:
            if isinstance(envelope, Welcome):
                await self._on_welcome(envelope)
            elif isinstance(envelope, ParticipantJoined):
                await self._on_participant_joined(envelope)
            elif isinstance(envelope, ParticipantLeft):
                await self._on_participant_left(envelope)
            elif isinstance(envelope, Offer):
                await self._on_offer(envelope)
            elif isinstance(envelope, Answer):
                await self._on_answer(envelope)
            elif isinstance(envelope, IceCandidate):
                await self._on_ice_candidate(envelope)
            elif isinstance(envelope, ChatMessage):
                self._on_chat_message(envelope)
            else:
                logger.warning("Unexpected %s envelope from server", envelope.type)
        except ProtocolViolation as e:
            logger.warning("Protocol violation: %s", e)

    async def _on_welcome(self, welcome: Welcome) -> None:
        self.local_id = welcome.id
        logger.info("Connected as %s", self.local_id)
        try:
            self.media = self._media_factory()
        except MediaCaptureError as e:
            # Channel stays open; without local media there is nothing to join with
            logger.error("%s", e)
            self.status_message = str(e)
            return
        logger.info("User %s joining room %s", self.email, self.room_id)
        await self.channel.send(Join(room_id=self.room_id, email=self.email))

    async def _on_participant_joined(self, joined: ParticipantJoined) -> None:
        if joined.id == self.local_id:
            return
        logger.info("New user connected: %s %s", joined.id, joined.email)
        session = self.peer_sessions.get(joined.id)
        if session is None:
            session = self._create_session(joined.id, joined.email)
        elif session.is_buffering_only:
            session.remote_email = joined.email
            self._upgrade(session)
        else:
            logger.info("Already negotiating with %s, reusing session", joined.id)
            session.remote_email = joined.email
            return
        await session.on_negotiation_needed()

    async def _on_participant_left(self, left: ParticipantLeft) -> None:
        logger.info("User disconnected: %s", left.id)
        session = self.peer_sessions.pop(left.id, None)
        self.remote_tracks.pop(left.id, None)
        if session is not None:
            await session.close()

    async def _on_offer(self, offer: Offer) -> None:
        logger.info("Received call from %s", offer.caller)
        session = self.peer_sessions.get(offer.caller)
        if session is None:
            session = self._create_session(offer.caller, offer.email)
        elif session.is_buffering_only:
            self._upgrade(session)
        if offer.email:
            session.remote_email = offer.email
        await session.on_remote_offer(offer.sdp)

    async def _on_answer(self, answer: Answer) -> None:
        session = self.peer_sessions.get(answer.caller)
        if session is None or session.transport is None:
            raise ProtocolViolation(f"answer from {answer.caller} without an outstanding offer")
        logger.info("Received answer from %s", answer.caller)
        await session.on_remote_answer(answer.sdp)

    async def _on_ice_candidate(self, message: IceCandidate) -> None:
        session = self.peer_sessions.get(message.caller)
        if session is None:
            logger.warning("Peer %s not found. Storing ICE candidate for later.", message.caller)
            session = self._create_session(message.caller, None, with_transport=False)
        await session.on_remote_candidate(message.candidate)

    def _on_chat_message(self, chat: ChatMessage) -> None:
        sender = SELF_SENDER if chat.sender == self.email else chat.sender
        self.transcript.append(ChatEntry(sender=sender, message=chat.message))

    async def send_chat(self, message: str) -> bool:
        if not message.strip() or self.disconnected:
            return False
        await self.channel.send(ChatMessage(room_id=self.room_id, message=message, sender=self.email))
        # The relay does not echo to the sender, so this is the only local copy
        self.transcript.append(ChatEntry(sender=SELF_SENDER, message=message))
        return True

    def toggle_audio(self) -> Optional[bool]:
        return self.media.toggle_audio() if self.media else None

    def toggle_video(self) -> Optional[bool]:
        return self.media.toggle_video() if self.media else None

    async def disconnect(self) -> None:
        if self.disconnected:
            return
        self.disconnected = True
        logger.info("Disconnecting from room %s", self.room_id)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        sessions = list(self.peer_sessions.values())
        self.peer_sessions.clear()
        self.remote_tracks.clear()
        if self.media is not None:
            self.media.stop()
        await asyncio.gather(*(session.close() for session in sessions))
        await self.channel.close()

    def _create_session(self, remote_id: str, email: Optional[str], with_transport: bool = True) -> PeerSession:
        logger.info("Creating peer connection to %s", remote_id)
        session = PeerSession(
            remote_id,
            self.local_id,
            self.channel.send,
            remote_email=email,
            local_email=self.email,
            on_track=self._handle_remote_track,
            on_connected=self._handle_peer_connected,
            on_closed=self._forget,
            negotiation_timeout=self._negotiation_timeout,
        )
        self.peer_sessions[remote_id] = session
        if with_transport:
            self._upgrade(session)
        return session

    def _upgrade(self, session: PeerSession) -> None:
        session.attach_transport(self._transport_factory())
        if self.media is not None:
            session.attach_tracks(self.media.tracks_for_peer())
        else:
            logger.warning("No local stream available")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Envelope handler failed: %r", exc, exc_info=exc)

    def _handle_peer_connected(self, remote_id: str) -> None:
        session = self.peer_sessions.get(remote_id)
        label = session.remote_email if session is not None else None
        logger.info("Peer connection established with %s (%s)", remote_id, label or "unknown")

    def _forget(self, session: PeerSession) -> None:
        # A replacement may already be registered under the same id
        if self.peer_sessions.get(session.remote_id) is session:
            del self.peer_sessions[session.remote_id]
            self.remote_tracks.pop(session.remote_id, None)

    def _handle_remote_track(self, remote_id: str, track: Any) -> None:
        self.remote_tracks.setdefault(remote_id, []).append(track)
        if self._on_remote_track is not None:
            self._on_remote_track(remote_id, track)
