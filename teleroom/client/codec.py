"""Conversions between wire payloads and aiortc objects."""

from typing import Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from teleroom.models import CandidatePayload, SessionDescription

CANDIDATE_PREFIX = "candidate:"


def description_from_payload(payload: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload.sdp, type=payload.type)


def description_to_payload(description: RTCSessionDescription) -> SessionDescription:
    return SessionDescription(type=description.type, sdp=description.sdp)


def candidate_from_payload(payload: CandidatePayload) -> Optional[RTCIceCandidate]:
    """Parse a browser-style candidate.

    Returns None for the empty end-of-candidates marker. Raises ValueError
    when the candidate line cannot be parsed.
    """
    line = payload.candidate.strip()
    if not line:
        return None
    # Browsers send the attribute with its "candidate:" prefix, aiortc wants it bare
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"malformed ICE candidate {payload.candidate!r}: {e}") from e
    candidate.sdpMid = payload.sdpMid
    candidate.sdpMLineIndex = payload.sdpMLineIndex
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> CandidatePayload:
    return CandidatePayload(
        candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        sdpMid=candidate.sdpMid,
        sdpMLineIndex=candidate.sdpMLineIndex,
    )
