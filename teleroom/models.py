from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Any, Dict, Literal, Optional, Union

# Wire event names
WELCOME = "welcome"
JOIN = "join"
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_LEFT = "participant-left"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
CHAT_MESSAGE = "chat-message"


class _Envelope(BaseModel):
    class Config:
        populate_by_name = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RoutingHeader(_Envelope):
    """The only part of an envelope the relay looks at."""

    class Config:
        populate_by_name = True
        extra = "allow"

    type: str
    target: Optional[str] = None
    room_id: Optional[str] = Field(default=None, alias="roomId")


class SessionDescription(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class CandidatePayload(BaseModel):
    """RTCIceCandidateInit as browsers serialize it."""

    class Config:
        extra = "allow"

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class Welcome(_Envelope):
    type: Literal["welcome"] = WELCOME
    id: str


class Join(_Envelope):
    type: Literal["join"] = JOIN
    room_id: str = Field(alias="roomId", min_length=1)
    email: str


class ParticipantJoined(_Envelope):
    type: Literal["participant-joined"] = PARTICIPANT_JOINED
    id: str
    email: str


class ParticipantLeft(_Envelope):
    type: Literal["participant-left"] = PARTICIPANT_LEFT
    id: str


class Offer(_Envelope):
    type: Literal["offer"] = OFFER
    target: str
    caller: str
    sdp: SessionDescription
    # Caller's label; the answering side never saw a participant-joined for it
    email: Optional[str] = None


class Answer(_Envelope):
    type: Literal["answer"] = ANSWER
    target: str
    caller: str
    sdp: SessionDescription


class IceCandidate(_Envelope):
    type: Literal["ice-candidate"] = ICE_CANDIDATE
    target: str
    caller: str
    candidate: CandidatePayload


class ChatMessage(_Envelope):
    type: Literal["chat-message"] = CHAT_MESSAGE
    room_id: Optional[str] = Field(default=None, alias="roomId")
    message: str
    sender: str


Envelope = Annotated[
    Union[Welcome, Join, ParticipantJoined, ParticipantLeft, Offer, Answer, IceCandidate, ChatMessage],
    Field(discriminator="type"),
]

_envelope_adapter = TypeAdapter(Envelope)


def parse_envelope(data: Any) -> Envelope:
    """Validate a decoded JSON object into its envelope class.

    Raises pydantic.ValidationError for unknown types or missing fields.
    """
    return _envelope_adapter.validate_python(data)
