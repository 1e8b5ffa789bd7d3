"""Websocket connection to the relay."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Optional

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)


class SignalingChannel:
    def __init__(self, url: str) -> None:
        self.url = url
        self._ws: Optional[ClientConnection] = None

    async def connect(self) -> None:
        logger.info("Connecting to server: %s", self.url)
        self._ws = await websockets.connect(self.url)
        logger.info("Connected to server")

    async def send(self, envelope: Any) -> None:
        """Send a pydantic envelope (or plain dict) as one JSON text frame."""
        if self._ws is None:
            raise ConnectionError("Signaling channel is not connected")
        data = envelope.to_wire() if hasattr(envelope, "to_wire") else envelope
        await self._ws.send(json.dumps(data))

    async def messages(self) -> AsyncIterator[dict]:
        """Yield decoded envelopes until the connection closes.

        Raises websockets.exceptions.ConnectionClosedError on an abnormal close.
        """
        if self._ws is None:
            raise ConnectionError("Signaling channel is not connected")
        async for raw in self._ws:
            try:
                data = json.loads(raw)
            except ValueError:
                logger.warning("Ignoring non-JSON frame from server")
                continue
            if isinstance(data, dict):
                yield data
            else:
                logger.warning("Ignoring non-object envelope from server")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
