import uuid
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from shared.events import tournament_created_event, tournament_deleted_event, tournament_updated_event
from shared.notifications import NotificationEmitter
from shared.state_machine import TournamentStateMachine, TournamentState, TransitionError

from .cache import Cache, tournament_key, tournament_list_key
from .errors import PersistenceError
from .ledger_store import LedgerStore
from .records import TournamentRecord, UserRecord
from .registration_service import notify_after_commit

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('title', 'description', 'map_name', 'tournament_type', 'starts_at',
                   'entry_fee', 'prize', 'max_participants')
AMOUNT_FIELDS = ('entry_fee', 'prize')

TOURNAMENT_NOT_FOUND = "Tournament not found"
LEDGER_UNAVAILABLE = "The ledger is temporarily unavailable, please try again"


def _parse_starts_at(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)
    except ValueError:
        raise ValueError(f"Invalid start time: {value}")


def _validate_fields(fields: dict):
    if 'title' in fields:
        if not isinstance(fields['title'], str):
            raise ValueError("Tournament title must be text")
        if not fields['title'].strip():
            raise ValueError("Tournament title is required")
    for name in ('description', 'map_name', 'tournament_type'):
        if fields.get(name) is not None and not isinstance(fields[name], str):
            raise ValueError(f"{name} must be text")
    for name in AMOUNT_FIELDS:
        if name in fields:
            value = fields[name]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative whole number")
    if 'max_participants' in fields:
        value = fields['max_participants']
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError("max_participants must be a positive whole number")


class TournamentRegistry:
    """
    Manages tournament records:
    - Create/update/delete tournaments
    - Cached lookups and listings
    - Status transitions (upcoming -> active -> completed)
    - Roster lookups
    """

    def __init__(self, store: LedgerStore, cache: Cache = None, emitter: NotificationEmitter = None):
        self.store = store
        self.cache = cache
        self.emitter = emitter

    def create_tournament(
        self,
        title: str,
        entry_fee: int = 0,
        prize: int = 0,
        max_participants: int = 100,
        description: str = '',
        map_name: str = None,
        tournament_type: str = 'BATTLE ROYALE',
        starts_at=None
    ) -> TournamentRecord:
        """
        Create a new tournament open for registration.

        Raises ValueError for malformed fields and PersistenceError when the
        ledger cannot take the write.
        """
        _validate_fields({
            'title': title,
            'entry_fee': entry_fee,
            'prize': prize,
            'max_participants': max_participants,
            'description': description,
            'map_name': map_name,
            'tournament_type': tournament_type,
        })
        now = datetime.utcnow()
        tournament = TournamentRecord(
            id=f"t_{uuid.uuid4().hex[:12]}",
            title=title.strip(),
            description=description or '',
            map_name=map_name,
            tournament_type=tournament_type or 'BATTLE ROYALE',
            entry_fee=entry_fee,
            prize=prize,
            max_participants=max_participants,
            status=TournamentState.UPCOMING.value,
            starts_at=_parse_starts_at(starts_at),
            created_at=now,
            updated_at=now,
        )

        try:
            with self.store.transaction() as txn:
                txn.add_tournament(tournament)
        except PersistenceError as e:
            logger.error(f"Failed to create tournament {tournament.title}: {e}")
            raise

        logger.info(f"Created tournament {tournament.id} ({tournament.title})")
        notify_after_commit(self.cache, self.emitter, tournament.id, tournament_created_event(tournament.to_dict()))
        return tournament

    def get_tournament(self, tournament_id: str) -> Optional[TournamentRecord]:
        """Get tournament by ID through the cache."""
        def load():
            tournament = self.store.get_tournament(tournament_id)
            return tournament.to_dict() if tournament else None

        data = self._cached(tournament_key(tournament_id), load)
        return TournamentRecord.from_dict(data) if data else None

    def list_tournaments(self, status: str = None) -> List[TournamentRecord]:
        """List tournaments ordered by start time, optionally filtered by status."""
        def load():
            return [t.to_dict() for t in self.store.list_tournaments(status=status)]

        return [TournamentRecord.from_dict(d) for d in self._cached(tournament_list_key(status), load)]

    def get_participants(self, tournament_id: str) -> Optional[List[UserRecord]]:
        """Users on the roster in join order, or None if the tournament doesn't exist."""
        tournament = self.store.get_tournament(tournament_id)
        if not tournament:
            return None
        users = [self.store.get_user(user_id) for user_id in tournament.participants]
        return [u for u in users if u is not None]

    def update_tournament(self, tournament_id: str, **fields) -> Tuple[bool, str]:
        """Update descriptive fields, fee, prize or capacity."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            return False, f"Cannot update fields: {', '.join(sorted(unknown))}"
        try:
            _validate_fields(fields)
            if 'starts_at' in fields:
                fields['starts_at'] = _parse_starts_at(fields['starts_at'])
        except ValueError as e:
            return False, str(e)

        try:
            with self.store.transaction() as txn:
                tournament = txn.lock_tournament(tournament_id)
                if not tournament:
                    return False, TOURNAMENT_NOT_FOUND

                sm = TournamentStateMachine.from_state_string(tournament.status)
                if not sm.can_perform('edit'):
                    return False, f"Cannot edit tournament in {tournament.status} state"
                if 'entry_fee' in fields and fields['entry_fee'] != tournament.entry_fee \
                        and tournament.status != TournamentState.UPCOMING.value:
                    return False, "Entry fee can only change while the tournament is upcoming"
                if fields.get('max_participants', tournament.max_participants) < len(tournament.participants):
                    return False, (
                        f"Capacity cannot drop below the {len(tournament.participants)} "
                        f"registered participants"
                    )
                if 'entry_fee' in fields and fields['entry_fee'] != tournament.entry_fee and tournament.participants:
                    return False, "Entry fee cannot change once participants have paid"

                for name, value in fields.items():
                    setattr(tournament, name, value.strip() if name == 'title' else value)
                txn.save_tournament(tournament)
        except PersistenceError as e:
            logger.error(f"Failed to update tournament {tournament_id}: {e}")
            return False, LEDGER_UNAVAILABLE

        notify_after_commit(self.cache, self.emitter, tournament_id, tournament_updated_event(tournament.to_dict()))
        return True, "Tournament updated"

    def start_tournament(self, tournament_id: str) -> Tuple[bool, str]:
        """Move tournament from upcoming to active, freezing the roster."""
        return self._transition(tournament_id, 'start')

    def complete_tournament(self, tournament_id: str) -> Tuple[bool, str]:
        """Move tournament from active to completed."""
        return self._transition(tournament_id, 'complete')

    def _transition(self, tournament_id: str, action: str) -> Tuple[bool, str]:
        try:
            with self.store.transaction() as txn:
                tournament = txn.lock_tournament(tournament_id)
                if not tournament:
                    return False, TOURNAMENT_NOT_FOUND

                # Use state machine to validate and execute transition
                sm = TournamentStateMachine.from_state_string(tournament.status)
                if not sm.can_transition(action):
                    return False, f"Cannot {action} tournament in {tournament.status} state"

                old_state = sm.state.value
                tournament.status = sm.transition(action).value
                txn.save_tournament(tournament)
        except TransitionError as e:
            return False, str(e)
        except PersistenceError as e:
            logger.error(f"Failed to {action} tournament {tournament_id}: {e}")
            return False, LEDGER_UNAVAILABLE

        logger.info(f"Tournament {tournament_id} moved from {old_state} to {tournament.status}")
        notify_after_commit(self.cache, self.emitter, tournament_id, tournament_updated_event(tournament.to_dict()))
        return True, f"Tournament is now {tournament.status}"

    def delete_tournament(self, tournament_id: str) -> Tuple[bool, str]:
        """Delete an upcoming tournament, refunding every participant's entry fee."""
        try:
            with self.store.transaction() as txn:
                tournament = txn.lock_tournament(tournament_id)
                if not tournament:
                    return False, TOURNAMENT_NOT_FOUND

                sm = TournamentStateMachine.from_state_string(tournament.status)
                if not sm.can_perform('delete'):
                    return False, f"Cannot delete tournament in {tournament.status} state"

                users = txn.lock_users(tournament.participants)
                for user in users.values():
                    user.balance += tournament.entry_fee
                    user.enrolled = [t for t in user.enrolled if t != tournament_id]
                    txn.save_user(user)
                txn.delete_tournament(tournament_id)
        except PersistenceError as e:
            logger.error(f"Failed to delete tournament {tournament_id}: {e}")
            return False, LEDGER_UNAVAILABLE

        logger.info(f"Deleted tournament {tournament_id}, refunded {len(users)} participants")
        notify_after_commit(self.cache, self.emitter, tournament_id, tournament_deleted_event(tournament_id))
        return True, "Tournament deleted"

    def _cached(self, key: str, loader):
        if self.cache is None:
            return loader()
        return self.cache.get_or_load(key, loader)
