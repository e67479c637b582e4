"""
Ledger store: the only writer of User and Tournament state.

A transaction takes exclusive holds on the rows it touches in one global
order: every tournament before any user, and ids ascending within a kind.
Two transactions touching the same rows therefore serialize instead of
deadlocking; transactions on disjoint rows run concurrently.

Writes are staged on the transaction and applied together on commit.
Leaving the ``with`` block through an exception discards them.
"""
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from .errors import LockOrderError, PersistenceError
from .models import db, Tournament, User
from .records import TournamentRecord, UserRecord

logger = logging.getLogger(__name__)

TOURNAMENT = 0
USER = 1

RowKey = Tuple[int, str]

_KIND_NAMES = {TOURNAMENT: 'tournament', USER: 'user'}


def _sort_key(record: TournamentRecord):
    # Scheduled tournaments first by start time, unscheduled ones last
    return (
        record.starts_at is None,
        record.starts_at or datetime.min,
        record.created_at or datetime.min,
        record.id,
    )


class LedgerTransaction(ABC):
    """One atomic unit of work against the ledger."""

    def __init__(self):
        self._held: List[RowKey] = []
        self._tournaments: Dict[str, Optional[TournamentRecord]] = {}
        self._users: Dict[str, Optional[UserRecord]] = {}
        self._staged_tournaments: Dict[str, TournamentRecord] = {}
        self._staged_users: Dict[str, UserRecord] = {}
        self._new_tournaments: Dict[str, TournamentRecord] = {}
        self._new_users: Dict[str, UserRecord] = {}
        self._deleted_tournaments: List[str] = []

    # ---- holds ----

    def _check_order(self, key: RowKey):
        if self._held and key < max(self._held):
            last = max(self._held)
            raise LockOrderError(
                f"Cannot lock {_KIND_NAMES[key[0]]} {key[1]} after "
                f"{_KIND_NAMES[last[0]]} {last[1]}"
            )

    def lock_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        """Hold the tournament row and return a private copy (None if absent)."""
        key = (TOURNAMENT, tournament_id)
        if key not in self._held:
            self._check_order(key)
            record = self._acquire_tournament(tournament_id)
            self._held.append(key)
            self._tournaments[tournament_id] = record
        record = self._tournaments[tournament_id]
        return record.copy() if record else None

    def lock_user(self, user_id: str) -> Optional[UserRecord]:
        """Hold the user row and return a private copy (None if absent)."""
        key = (USER, user_id)
        if key not in self._held:
            self._check_order(key)
            record = self._acquire_user(user_id)
            self._held.append(key)
            self._users[user_id] = record
        record = self._users[user_id]
        return record.copy() if record else None

    def lock_users(self, user_ids: Iterable[str]) -> Dict[str, UserRecord]:
        """Hold several user rows in ascending id order. Missing users are left out."""
        locked = {}
        for user_id in sorted(set(user_ids)):
            record = self.lock_user(user_id)
            if record is not None:
                locked[user_id] = record
        return locked

    # ---- staged writes ----

    def save_tournament(self, record: TournamentRecord):
        if (TOURNAMENT, record.id) not in self._held or self._tournaments.get(record.id) is None:
            raise LockOrderError(f"Tournament {record.id} must be locked before it is saved")
        self._staged_tournaments[record.id] = record.copy()

    def save_user(self, record: UserRecord):
        if (USER, record.id) not in self._held or self._users.get(record.id) is None:
            raise LockOrderError(f"User {record.id} must be locked before it is saved")
        self._staged_users[record.id] = record.copy()

    def add_tournament(self, record: TournamentRecord):
        self._new_tournaments[record.id] = record.copy()

    def add_user(self, record: UserRecord):
        """Stage a new user. Lock the id first so concurrent creators serialize."""
        if (USER, record.id) not in self._held:
            raise LockOrderError(f"User {record.id} must be locked before it is created")
        if self._users.get(record.id) is not None:
            raise ValueError(f"User {record.id} already exists")
        self._new_users[record.id] = record.copy()

    def delete_tournament(self, tournament_id: str):
        if (TOURNAMENT, tournament_id) not in self._held:
            raise LockOrderError(f"Tournament {tournament_id} must be locked before it is deleted")
        self._staged_tournaments.pop(tournament_id, None)
        self._deleted_tournaments.append(tournament_id)

    # ---- backend hooks ----

    @abstractmethod
    def _acquire_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        ...

    @abstractmethod
    def _acquire_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def _commit(self):
        ...

    @abstractmethod
    def _rollback(self):
        ...

    def _release(self):
        pass


class LedgerStore(ABC):
    """Durable record of users and tournaments with atomic multi-row updates."""

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        txn = self._begin()
        try:
            yield txn
            txn._commit()
        except Exception:
            txn._rollback()
            raise
        finally:
            txn._release()

    @abstractmethod
    def _begin(self) -> LedgerTransaction:
        ...

    @abstractmethod
    def get_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        """Non-locking read. Never use the result to decide a mutation."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Non-locking read."""

    @abstractmethod
    def list_tournaments(self, status: str = None) -> List[TournamentRecord]:
        """Non-locking read ordered by start time, then creation time."""


# ==================== In-memory backend ====================


class InMemoryLedgerTransaction(LedgerTransaction):

    def __init__(self, store: "InMemoryLedgerStore"):
        super().__init__()
        self.store = store
        self._locked: List[Tuple[RowKey, threading.Lock]] = []

    def _acquire(self, key: RowKey):
        lock = self.store._checkout(key)
        if not lock.acquire(timeout=self.store.lock_timeout):
            self.store._checkin(key)
            raise PersistenceError(
                f"Timed out after {self.store.lock_timeout}s waiting for "
                f"{_KIND_NAMES[key[0]]} {key[1]}"
            )
        self._locked.append((key, lock))

    def _acquire_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        self._acquire((TOURNAMENT, tournament_id))
        with self.store._state_lock:
            record = self.store._tournaments.get(tournament_id)
            return record.copy() if record else None

    def _acquire_user(self, user_id: str) -> Optional[UserRecord]:
        self._acquire((USER, user_id))
        with self.store._state_lock:
            record = self.store._users.get(user_id)
            return record.copy() if record else None

    def _commit(self):
        now = datetime.utcnow()
        with self.store._state_lock:
            for tournament_id, record in self._new_tournaments.items():
                if tournament_id in self.store._tournaments:
                    raise PersistenceError(f"Tournament {tournament_id} already exists")
            for tournament_id in self._deleted_tournaments:
                self.store._tournaments.pop(tournament_id, None)
            for tournament_id, record in self._staged_tournaments.items():
                record.updated_at = now
                self.store._tournaments[tournament_id] = record
            for tournament_id, record in self._new_tournaments.items():
                self.store._tournaments[tournament_id] = record
            for user_id, record in self._staged_users.items():
                self.store._users[user_id] = record
            for user_id, record in self._new_users.items():
                self.store._users[user_id] = record

    def _rollback(self):
        self._staged_tournaments.clear()
        self._staged_users.clear()
        self._new_tournaments.clear()
        self._new_users.clear()
        self._deleted_tournaments.clear()

    def _release(self):
        while self._locked:
            key, lock = self._locked.pop()
            lock.release()
            self.store._checkin(key)


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger backed by dicts and one lock per row.

    Stored records are replaced on commit, never mutated in place, so a
    reader holding an old snapshot is unaffected by later commits.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._tournaments: Dict[str, TournamentRecord] = {}
        self._users: Dict[str, UserRecord] = {}
        self._state_lock = threading.RLock()
        # key -> [lock, number of transactions holding or waiting for it]
        self._row_locks: Dict[RowKey, list] = {}
        self._row_locks_guard = threading.Lock()

    def _checkout(self, key: RowKey) -> threading.Lock:
        with self._row_locks_guard:
            entry = self._row_locks.get(key)
            if entry is None:
                entry = self._row_locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: RowKey):
        # Drop the lock once nobody holds or waits for it
        with self._row_locks_guard:
            entry = self._row_locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._row_locks[key]

    def _begin(self) -> LedgerTransaction:
        return InMemoryLedgerTransaction(self)

    def get_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        with self._state_lock:
            record = self._tournaments.get(tournament_id)
            return record.copy() if record else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._state_lock:
            record = self._users.get(user_id)
            return record.copy() if record else None

    def list_tournaments(self, status: str = None) -> List[TournamentRecord]:
        with self._state_lock:
            records = [t.copy() for t in self._tournaments.values()]
        if status:
            records = [t for t in records if t.status == status]
        return sorted(records, key=_sort_key)


# ==================== SQL backend ====================


class SqlLedgerTransaction(LedgerTransaction):
    """Row holds are SELECT ... FOR UPDATE inside the session's transaction."""

    def __init__(self, session, lock_timeout: float):
        super().__init__()
        self.session = session
        self._tournament_rows: Dict[str, Tournament] = {}
        self._user_rows: Dict[str, User] = {}
        self._set_lock_timeout(lock_timeout)

    def _set_lock_timeout(self, lock_timeout: float):
        if self.session.get_bind().dialect.name != 'postgresql':
            return
        try:
            self.session.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout * 1000)}ms'"))
        except DBAPIError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not start ledger transaction: {e.orig}") from e

    def _acquire_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        try:
            row = (
                self.session.query(Tournament)
                .filter_by(id=tournament_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
        except DBAPIError as e:
            raise PersistenceError(f"Could not lock tournament {tournament_id}") from e
        if row is None:
            return None
        self._tournament_rows[tournament_id] = row
        return row.to_record()

    def _acquire_user(self, user_id: str) -> Optional[UserRecord]:
        try:
            row = (
                self.session.query(User)
                .filter_by(id=user_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
        except DBAPIError as e:
            raise PersistenceError(f"Could not lock user {user_id}") from e
        if row is None:
            return None
        self._user_rows[user_id] = row
        return row.to_record()

    def _commit(self):
        for tournament_id in self._deleted_tournaments:
            self.session.delete(self._tournament_rows[tournament_id])
        for tournament_id, record in self._staged_tournaments.items():
            self._tournament_rows[tournament_id].apply(record)
        for record in self._new_tournaments.values():
            self.session.add(Tournament.from_record(record))
        for user_id, record in self._staged_users.items():
            self._user_rows[user_id].apply(record)
        for record in self._new_users.values():
            self.session.add(User.from_record(record))
        try:
            self.session.commit()
        except DBAPIError as e:
            self.session.rollback()
            raise PersistenceError(f"Ledger commit failed: {e.orig}") from e

    def _rollback(self):
        self.session.rollback()


class SqlLedgerStore(LedgerStore):
    """Ledger on the Flask-SQLAlchemy session. Must be used inside an app context."""

    def __init__(self, database=db, lock_timeout: float = 5.0):
        self.db = database
        self.lock_timeout = lock_timeout

    def _begin(self) -> LedgerTransaction:
        return SqlLedgerTransaction(self.db.session, self.lock_timeout)

    def get_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        try:
            row = self.db.session.get(Tournament, tournament_id)
        except DBAPIError as e:
            self.db.session.rollback()
            raise PersistenceError(f"Could not read tournament {tournament_id}") from e
        return row.to_record() if row else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        try:
            row = self.db.session.get(User, user_id)
        except DBAPIError as e:
            self.db.session.rollback()
            raise PersistenceError(f"Could not read user {user_id}") from e
        return row.to_record() if row else None

    def list_tournaments(self, status: str = None) -> List[TournamentRecord]:
        query = self.db.session.query(Tournament)
        if status:
            query = query.filter_by(status=status)
        try:
            rows = query.all()
        except DBAPIError as e:
            self.db.session.rollback()
            raise PersistenceError("Could not list tournaments") from e
        return sorted((row.to_record() for row in rows), key=_sort_key)
