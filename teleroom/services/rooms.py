from dataclasses import dataclass
from typing import Dict, Optional, Set
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Participant:
    id: str
    email: str


class RoomRegistry:
    """Room id -> participants currently in it.

    Only the relay's event loop mutates the registry, so there is no locking.
    Empty rooms are kept; membership is always read from the live sets.
    """

    def __init__(self):
        self.rooms: Dict[str, Set[Participant]] = {}
        # participant id -> (room id, participant) of the room it is in now
        self._current: Dict[str, tuple[str, Participant]] = {}

    def join(self, room_id: str, participant: Participant) -> None:
        current = self._current.get(participant.id)
        if current is not None:
            if current[0] == room_id and current[1] == participant:
                return
            # A connection lives in one room at a time; move it
            self.leave(participant.id)

        self.rooms.setdefault(room_id, set()).add(participant)
        self._current[participant.id] = (room_id, participant)
        logger.info("Participant %s (%s) joined room %s", participant.id, participant.email, room_id)

    def leave(self, participant_id: str) -> Optional[str]:
        current = self._current.pop(participant_id, None)
        if current is None:
            return None
        room_id, participant = current
        self.rooms.get(room_id, set()).discard(participant)
        logger.info("Participant %s left room %s", participant_id, room_id)
        return room_id

    def members(self, room_id: str) -> Set[Participant]:
        return set(self.rooms.get(room_id, ()))

    def room_of(self, participant_id: str) -> Optional[str]:
        current = self._current.get(participant_id)
        return current[0] if current else None
