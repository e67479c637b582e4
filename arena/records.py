from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class UserRecord:
    """Snapshot of a user row. Copies handed out by the ledger store are private."""
    id: str
    balance: int = 0
    enrolled: List[str] = field(default_factory=list)
    username: Optional[str] = None
    created_at: Optional[datetime] = None

    def copy(self) -> "UserRecord":
        return replace(self, enrolled=list(self.enrolled))

    def is_enrolled(self, tournament_id: str) -> bool:
        return tournament_id in self.enrolled

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'username': self.username,
            'balance': self.balance,
            'enrolled': list(self.enrolled),
            'created_at': _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserRecord":
        return cls(
            id=data['id'],
            balance=data.get('balance', 0),
            enrolled=list(data.get('enrolled') or []),
            username=data.get('username'),
            created_at=_parse(data.get('created_at')),
        )


@dataclass
class TournamentRecord:
    """Snapshot of a tournament row."""
    id: str
    title: str
    entry_fee: int = 0
    prize: int = 0
    max_participants: int = 100
    participants: List[str] = field(default_factory=list)
    status: str = 'upcoming'
    description: str = ''
    map_name: Optional[str] = None
    tournament_type: str = 'BATTLE ROYALE'
    starts_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def copy(self) -> "TournamentRecord":
        return replace(self, participants=list(self.participants))

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.max_participants

    @property
    def spots_left(self) -> int:
        return max(0, self.max_participants - len(self.participants))

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'map_name': self.map_name,
            'tournament_type': self.tournament_type,
            'entry_fee': self.entry_fee,
            'prize': self.prize,
            'max_participants': self.max_participants,
            'participants': list(self.participants),
            'participant_count': len(self.participants),
            'spots_left': self.spots_left,
            'status': self.status,
            'starts_at': _iso(self.starts_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TournamentRecord":
        return cls(
            id=data['id'],
            title=data['title'],
            entry_fee=data.get('entry_fee', 0),
            prize=data.get('prize', 0),
            max_participants=data.get('max_participants', 100),
            participants=list(data.get('participants') or []),
            status=data.get('status', 'upcoming'),
            description=data.get('description') or '',
            map_name=data.get('map_name'),
            tournament_type=data.get('tournament_type') or 'BATTLE ROYALE',
            starts_at=_parse(data.get('starts_at')),
            created_at=_parse(data.get('created_at')),
            updated_at=_parse(data.get('updated_at')),
        )
