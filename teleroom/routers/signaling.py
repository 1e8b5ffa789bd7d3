from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
import logging

from teleroom.models import ANSWER, CHAT_MESSAGE, ICE_CANDIDATE, JOIN, OFFER, Join, RoutingHeader
from teleroom.services.relay import Relay

logger = logging.getLogger(__name__)

router = APIRouter()

relay = Relay()

# Forwarded untouched to envelope["target"]
TARGETED_TYPES = {OFFER, ANSWER, ICE_CANDIDATE}


async def handle_message(relay: Relay, client_id: str, data: dict) -> None:
    try:
        header = RoutingHeader.model_validate(data)
    except ValidationError as e:
        logger.warning(f"⚠️  Malformed envelope from {client_id}: {e.errors()}")
        return

    message_type = header.type
    logger.info(f"📨 Received {message_type} from {client_id}")

    if message_type == JOIN:
        try:
            join = Join.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️  Bad join from {client_id}: {e.errors()}")
            return
        logger.info(f"User {join.email} joining room {join.room_id}")
        await relay.join(client_id, join.room_id, join.email)

    elif message_type in TARGETED_TYPES:
        await relay.route_to_target(data)

    elif message_type == CHAT_MESSAGE:
        if not header.room_id:
            logger.warning(f"⚠️  Chat message from {client_id} without roomId, dropping")
            return
        logger.info(f"💬 Chat message from {data.get('sender')} in room {header.room_id}")
        await relay.route_to_room(header.room_id, data, client_id)

    else:
        logger.warning(f"⚠️  Unknown message type {message_type!r} from {client_id}")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    client_id = await relay.connect(websocket)

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.warning(f"⚠️  Non-JSON frame from {client_id}, ignoring")
                continue
            if not isinstance(data, dict):
                logger.warning(f"⚠️  Envelope from {client_id} is not an object, ignoring")
                continue
            await handle_message(relay, client_id, data)

    except WebSocketDisconnect:
        await relay.disconnect(client_id)
    except Exception as e:
        logger.error(f"❌ Error in websocket: {e}")
        await relay.disconnect(client_id)
