from fastapi import WebSocket
from typing import Any, Dict, Iterable, Optional
import asyncio
import logging
import uuid

from teleroom.models import ParticipantJoined, ParticipantLeft, Welcome
from teleroom.services.rooms import Participant, RoomRegistry

logger = logging.getLogger(__name__)


class Relay:
    """Content-blind envelope router.

    Envelopes are forwarded verbatim; only ``target`` and ``roomId`` are read.
    """

    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry or RoomRegistry()
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        client_id = uuid.uuid4().hex
        self.active_connections[client_id] = websocket
        logger.info(f"✅ Client {client_id} connected")
        await self.send_to_client(Welcome(id=client_id).to_wire(), client_id)
        return client_id

    async def send_to_client(self, message: Dict[str, Any], client_id: str) -> bool:
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            # Target went away mid-negotiation; the sender just never hears back
            logger.debug(f"Dropping {message.get('type')} for vanished client {client_id}")
            return False
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"❌ Error sending to client {client_id}: {e}")
            return False
        return True

    async def _fan_out(self, message: Dict[str, Any], client_ids: Iterable[str]) -> None:
        await asyncio.gather(*(self.send_to_client(message, cid) for cid in client_ids))

    async def route_to_target(self, envelope: Dict[str, Any]) -> bool:
        target = envelope.get("target")
        if not target:
            logger.warning(f"Envelope {envelope.get('type')} has no target, dropping")
            return False
        return await self.send_to_client(envelope, target)

    async def route_to_room(
        self,
        room_id: str,
        envelope: Dict[str, Any],
        sender_id: Optional[str],
        exclude_sender: bool = True,
    ) -> None:
        recipients = [
            p.id for p in self.registry.members(room_id)
            if not (exclude_sender and p.id == sender_id)
        ]
        await self._fan_out(envelope, recipients)

    async def broadcast(self, envelope: Dict[str, Any], exclude_client: Optional[str] = None) -> None:
        recipients = [cid for cid in self.active_connections if cid != exclude_client]
        await self._fan_out(envelope, recipients)

    async def join(self, client_id: str, room_id: str, email: str) -> None:
        previous_room = self.registry.room_of(client_id)
        self.registry.join(room_id, Participant(id=client_id, email=email))
        if previous_room is not None and previous_room != room_id:
            logger.info(f"🔀 Client {client_id} moved from room {previous_room} to {room_id}")
            # The old room must drop its sessions with the mover
            await self.broadcast(ParticipantLeft(id=client_id).to_wire(), exclude_client=client_id)
        await self.route_to_room(room_id, ParticipantJoined(id=client_id, email=email).to_wire(), client_id)

    async def disconnect(self, client_id: str) -> None:
        self.active_connections.pop(client_id, None)
        room_id = self.registry.leave(client_id)
        logger.info(f"❌ Client {client_id} disconnected (room={room_id})")
        if room_id is None:
            return
        # Departure notice goes to every connection, not only the room
        await self.broadcast(ParticipantLeft(id=client_id).to_wire())
