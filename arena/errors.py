from enum import Enum
from dataclasses import dataclass
from typing import Optional

from .records import TournamentRecord, UserRecord


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_STATUS = "invalid_status"
    ALREADY_REGISTERED = "already_registered"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NOT_REGISTERED = "not_registered"
    PERSISTENCE_ERROR = "persistence_error"
    VALIDATION_ERROR = "validation_error"


class PersistenceError(Exception):
    """Transient storage or lock failure. Safe to retry the whole operation."""


class LockOrderError(RuntimeError):
    """A transaction asked for holds out of the global order (tournaments before users)."""


class RegistrationError(Exception):
    """Business-rule violation raised inside a ledger transaction to force a rollback."""

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


@dataclass
class RegistrationResult:
    ok: bool
    tournament: Optional[TournamentRecord] = None
    user: Optional[UserRecord] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, tournament: TournamentRecord = None, user: UserRecord = None) -> "RegistrationResult":
        return cls(ok=True, tournament=tournament, user=user)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "RegistrationResult":
        return cls(ok=False, error_kind=kind, message=message)

    def to_dict(self) -> dict:
        if not self.ok:
            return {
                'ok': False,
                'error_kind': self.error_kind.value,
                'message': self.message,
            }
        return {
            'ok': True,
            'tournament': self.tournament.to_dict() if self.tournament else None,
            'user': self.user.to_dict() if self.user else None,
        }
