from enum import Enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import json


class EventType(str, Enum):
    TOURNAMENT_REGISTRATION = "tournament_registration"
    TOURNAMENT_UNREGISTRATION = "tournament_unregistration"
    TOURNAMENT_CREATED = "tournament_created"
    TOURNAMENT_UPDATED = "tournament_updated"
    TOURNAMENT_DELETED = "tournament_deleted"


@dataclass
class Event:
    """Post-commit change notification handed to the emitter."""
    type: EventType
    tournament: Optional[dict] = None
    tournament_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.tournament_id is None and self.tournament:
            self.tournament_id = self.tournament.get("id")

    def to_dict(self) -> dict:
        message = {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "timestamp": self.timestamp,
        }
        if self.tournament is not None:
            message["tournament"] = self.tournament
        if self.tournament_id is not None:
            message["tournamentId"] = self.tournament_id
        if self.user_id is not None:
            message["userId"] = self.user_id
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def registration_event(tournament: dict, user_id: str) -> Event:
    return Event(type=EventType.TOURNAMENT_REGISTRATION, tournament=tournament, user_id=user_id)


def unregistration_event(tournament: dict, user_id: str) -> Event:
    return Event(type=EventType.TOURNAMENT_UNREGISTRATION, tournament=tournament, user_id=user_id)


def tournament_created_event(tournament: dict) -> Event:
    return Event(type=EventType.TOURNAMENT_CREATED, tournament=tournament)


def tournament_updated_event(tournament: dict) -> Event:
    return Event(type=EventType.TOURNAMENT_UPDATED, tournament=tournament)


def tournament_deleted_event(tournament_id: str) -> Event:
    return Event(type=EventType.TOURNAMENT_DELETED, tournament_id=tournament_id)
