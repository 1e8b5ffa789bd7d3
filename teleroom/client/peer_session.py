"""Per-remote-participant negotiation state machine.

One PeerSession exists per remote participant. The side that learns about the
other through ``participant-joined`` becomes the offerer (its transport's
negotiation-needed signal fires once local tracks are attached); the side that
receives the offer answers.

Remote ICE candidates can overtake the description they belong to because
they travel as separate envelopes. Until the remote description is applied
they are kept in an ordered buffer, which is drained completely before any
later candidate is handed to the transport directly.

All methods run on the client's single event loop. Handlers may suspend on
transport calls, so every transition re-checks the state afterwards instead
of assuming nothing happened in between (a ``participant-left`` can close the
session while an offer is being created).
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional

from teleroom.client.codec import (
    candidate_from_payload,
    candidate_to_payload,
    description_from_payload,
    description_to_payload,
)
from teleroom.models import Answer, CandidatePayload, IceCandidate, Offer, SessionDescription

logger = logging.getLogger(__name__)

SendFn = Callable[[Any], Awaitable[None]]


class NegotiationState(str, Enum):
    NEW = "new"
    OFFERING = "offering"
    OFFER_SENT = "offer-sent"
    ANSWERING = "answering"
    ANSWER_SENT = "answer-sent"
    CONNECTED = "connected"
    CLOSED = "closed"


class PeerSession:
    """Negotiation with one remote participant.

    ``transport`` is an aiortc ``RTCPeerConnection`` (or anything with the same
    coroutine methods and ``on`` event registration). A session may start
    without one: it then only buffers candidates until ``attach_transport``
    upgrades it.
    """

    def __init__(
        self,
        remote_id: str,
        local_id: str,
        send: SendFn,
        *,
        remote_email: Optional[str] = None,
        local_email: Optional[str] = None,
        transport: Any = None,
        on_track: Optional[Callable[[str, Any], None]] = None,
        on_connected: Optional[Callable[[str], None]] = None,
        on_closed: Optional[Callable[["PeerSession"], None]] = None,
        negotiation_timeout: float = 0,
    ):
        self.remote_id = remote_id
        self.local_id = local_id
        self.remote_email = remote_email
        self.local_email = local_email
        self.state = NegotiationState.NEW
        self.transport = None
        self.remote_tracks: List[Any] = []

        self._send = send
        self._on_track = on_track
        self._on_connected = on_connected
        self._on_closed = on_closed
        self._pending_candidates: Deque[CandidatePayload] = deque()
        # True once the remote description is applied and the buffer has drained
        self._remote_ready = False
        self._applying_answer = False
        self._negotiation_timeout = negotiation_timeout
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._close_task: Optional[asyncio.Task] = None

        if transport is not None:
            self.attach_transport(transport)

    def __repr__(self) -> str:
        return f"<PeerSession remote={self.remote_id} state={self.state.value}>"

    @property
    def is_buffering_only(self) -> bool:
        return self.transport is None and self.state is NegotiationState.NEW

    @property
    def pending_candidates(self) -> List[CandidatePayload]:
        return list(self._pending_candidates)

    def attach_transport(self, transport: Any) -> None:
        if self.state is NegotiationState.CLOSED:
            logger.warning("Not attaching transport to closed session for %s", self.remote_id)
            return
        if self.transport is not None:
            logger.warning("Session for %s already has a transport", self.remote_id)
            return
        self.transport = transport
        transport.on("track", self._handle_track)
        transport.on("connectionstatechange", self._handle_connection_state)
        transport.on("icecandidate", self._handle_local_candidate)

    def attach_tracks(self, tracks) -> None:
        for track in tracks:
            logger.debug("Adding %s track to peer connection for %s", track.kind, self.remote_id)
            self.transport.addTrack(track)

    async def on_negotiation_needed(self) -> bool:
        if self.state is not NegotiationState.NEW or self.transport is None:
            logger.debug("Ignoring negotiation-needed for %s in state %s", self.remote_id, self.state.value)
            return False

        transport = self.transport
        self.state = NegotiationState.OFFERING
        logger.info("Negotiation needed for %s", self.remote_id)
        try:
            offer = await transport.createOffer()
            await transport.setLocalDescription(offer)
        except Exception:
            if self.state is NegotiationState.OFFERING:
                logger.exception("Error creating offer for %s", self.remote_id)
                await self.close()
            return False

        if self.state is not NegotiationState.OFFERING:
            return False
        self.state = NegotiationState.OFFER_SENT
        self._arm_timeout()
        logger.info("Sending offer to %s", self.remote_id)
        await self._send(Offer(
            target=self.remote_id,
            caller=self.local_id,
            sdp=description_to_payload(transport.localDescription),
            email=self.local_email,
        ))
        return True

    async def on_remote_offer(self, description: SessionDescription) -> bool:
        if self.state is not NegotiationState.NEW or self.transport is None:
            logger.warning("Ignoring offer from %s in state %s", self.remote_id, self.state.value)
            return False

        transport = self.transport
        self.state = NegotiationState.ANSWERING
        try:
            await transport.setRemoteDescription(description_from_payload(description))
            answer = await transport.createAnswer()
            await transport.setLocalDescription(answer)
        except Exception:
            if self.state is NegotiationState.ANSWERING:
                logger.exception("Error handling offer from %s", self.remote_id)
                await self.close()
            return False

        if self.state is not NegotiationState.ANSWERING:
            return False
        self.state = NegotiationState.ANSWER_SENT
        self._arm_timeout()
        logger.info("Sending answer to %s", self.remote_id)
        await self._send(Answer(
            target=self.remote_id,
            caller=self.local_id,
            sdp=description_to_payload(transport.localDescription),
        ))
        await self._flush_candidates()
        if self.state is NegotiationState.ANSWER_SENT and self.transport is not None \
                and getattr(self.transport, "connectionState", None) == "connected":
            self._mark_connected()
        return True

    async def on_remote_answer(self, description: SessionDescription) -> bool:
        if self.state is not NegotiationState.OFFER_SENT or self._applying_answer:
            logger.warning("Ignoring answer from %s in state %s", self.remote_id, self.state.value)
            return False

        transport = self.transport
        self._applying_answer = True
        try:
            await transport.setRemoteDescription(description_from_payload(description))
        except Exception:
            if self.state is NegotiationState.OFFER_SENT:
                logger.exception("Error setting remote description from %s", self.remote_id)
                await self.close()
            return False
        finally:
            self._applying_answer = False

        if self.state is not NegotiationState.OFFER_SENT:
            return False
        self._mark_connected()
        await self._flush_candidates()
        return True

    async def on_remote_candidate(self, candidate: CandidatePayload) -> None:
        if self.state is NegotiationState.CLOSED:
            logger.debug("Dropping ICE candidate for closed session %s", self.remote_id)
            return
        if not self._remote_ready:
            logger.debug("Remote description not set for %s, storing ICE candidate for later", self.remote_id)
            self._pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def close(self) -> None:
        if self.state is NegotiationState.CLOSED:
            return
        logger.info("Closing peer session for %s (was %s)", self.remote_id, self.state.value)
        self.state = NegotiationState.CLOSED
        self._pending_candidates.clear()
        self._remote_ready = False
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

        transport, self.transport = self.transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning("Error closing transport for %s: %s", self.remote_id, e)
        if self._on_closed is not None:
            self._on_closed(self)

    async def _flush_candidates(self) -> None:
        if self._pending_candidates:
            logger.info("Adding %d pending ICE candidates for %s", len(self._pending_candidates), self.remote_id)
        # Candidates that arrive while we are suspended here join the tail of the deque
        while self._pending_candidates and self.transport is not None:
            await self._apply_candidate(self._pending_candidates.popleft())
        if self.state is not NegotiationState.CLOSED:
            self._remote_ready = True

    async def _apply_candidate(self, payload: CandidatePayload) -> None:
        try:
            candidate = candidate_from_payload(payload)
        except ValueError as e:
            logger.warning("Dropping ICE candidate from %s: %s", self.remote_id, e)
            return
        if candidate is None:
            logger.debug("End of candidates from %s", self.remote_id)
            return
        try:
            await self.transport.addIceCandidate(candidate)
        except Exception as e:
            logger.warning("Error adding ICE candidate from %s: %s", self.remote_id, e)

    def _mark_connected(self) -> None:
        if self.state not in (NegotiationState.OFFER_SENT, NegotiationState.ANSWER_SENT):
            return
        self.state = NegotiationState.CONNECTED
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        logger.info("Peer session for %s connected", self.remote_id)
        if self._on_connected is not None:
            self._on_connected(self.remote_id)

    def _arm_timeout(self) -> None:
        if self._negotiation_timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(self._negotiation_timeout, self._on_timeout)

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self.state in (NegotiationState.OFFER_SENT, NegotiationState.ANSWER_SENT):
            logger.warning("Negotiation with %s timed out in state %s", self.remote_id, self.state.value)
            self._close_task = asyncio.ensure_future(self.close())

    def _handle_track(self, track) -> None:
        if self.state is NegotiationState.CLOSED:
            return
        logger.info("Received %s track from %s", track.kind, self.remote_id)
        self.remote_tracks.append(track)
        if self.state is NegotiationState.ANSWER_SENT:
            self._mark_connected()
        if self._on_track is not None:
            self._on_track(self.remote_id, track)

    async def _handle_connection_state(self) -> None:
        if self.transport is None:
            return
        connection_state = self.transport.connectionState
        logger.debug("Connection state for %s is %s", self.remote_id, connection_state)
        if connection_state == "connected":
            if self.state is NegotiationState.ANSWER_SENT:
                self._mark_connected()
        elif connection_state == "failed":
            await self.close()

    async def _handle_local_candidate(self, candidate) -> None:
        if candidate is None or self.state is NegotiationState.CLOSED:
            return
        logger.debug("Sending ICE candidate to %s", self.remote_id)
        await self._send(IceCandidate(
            target=self.remote_id,
            caller=self.local_id,
            candidate=candidate_to_payload(candidate),
        ))
