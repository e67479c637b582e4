import time
import logging
from typing import Callable, Optional, Tuple

from shared.events import Event, registration_event, unregistration_event
from shared.notifications import NotificationEmitter
from shared.state_machine import TournamentStateMachine

from .cache import Cache
from .errors import ErrorKind, PersistenceError, RegistrationError, RegistrationResult
from .ledger_store import LedgerStore, LedgerTransaction
from .records import TournamentRecord, UserRecord

logger = logging.getLogger(__name__)


def _validate_ids(tournament_id, user_id) -> Optional[RegistrationResult]:
    if not isinstance(tournament_id, str) or not tournament_id.strip():
        return RegistrationResult.failure(ErrorKind.VALIDATION_ERROR, "Tournament id is required")
    if not isinstance(user_id, str) or not user_id.strip():
        return RegistrationResult.failure(ErrorKind.VALIDATION_ERROR, "User id is required")
    return None


def run_with_retries(
    operation: Callable[[], RegistrationResult],
    description: str,
    max_retries: int,
    backoff: float,
    sleep: Callable[[float], None] = time.sleep,
) -> RegistrationResult:
    """
    Run a ledger operation, retrying transient persistence failures.

    Each attempt starts from scratch, so preconditions are re-checked
    against fresh state every time.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except RegistrationError as e:
            logger.debug(f"{description} rejected: {e.kind.value}: {e.message}")
            return RegistrationResult.failure(e.kind, e.message)
        except PersistenceError as e:
            if attempt >= max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                return RegistrationResult.failure(
                    ErrorKind.PERSISTENCE_ERROR,
                    "The ledger is temporarily unavailable, please try again"
                )
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning(f"{description} hit a persistence error ({e}); retry {attempt}/{max_retries} in {delay:.3f}s")
            sleep(delay)


class RegistrationService:
    """
    Moves users on and off tournament rosters while settling entry fees.

    The only component that changes a user's balance and a tournament's
    roster together. Decisions are always taken on rows held by a ledger
    transaction, never on cached or previously read values.
    """

    def __init__(
        self,
        store: LedgerStore,
        cache: Cache = None,
        emitter: NotificationEmitter = None,
        max_retries: int = 3,
        retry_backoff: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cache = cache
        self.emitter = emitter
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._sleep = sleep

    def register(self, tournament_id: str, user_id: str) -> RegistrationResult:
        """Debit the entry fee and take a participant slot."""
        invalid = _validate_ids(tournament_id, user_id)
        if invalid:
            return invalid

        result = run_with_retries(
            lambda: self._register_once(tournament_id, user_id),
            f"Registration of {user_id} for {tournament_id}",
            self.max_retries, self.retry_backoff, self._sleep,
        )
        if result.ok:
            logger.info(
                f"User {user_id} registered for {tournament_id} "
                f"({len(result.tournament.participants)}/{result.tournament.max_participants}), "
                f"balance now {result.user.balance}"
            )
            self._after_commit(result.tournament, registration_event(result.tournament.to_dict(), user_id))
        return result

    def unregister(self, tournament_id: str, user_id: str) -> RegistrationResult:
        """Refund the entry fee and free the participant slot."""
        invalid = _validate_ids(tournament_id, user_id)
        if invalid:
            return invalid

        result = run_with_retries(
            lambda: self._unregister_once(tournament_id, user_id),
            f"Unregistration of {user_id} from {tournament_id}",
            self.max_retries, self.retry_backoff, self._sleep,
        )
        if result.ok:
            logger.info(f"User {user_id} unregistered from {tournament_id}, balance now {result.user.balance}")
            self._after_commit(result.tournament, unregistration_event(result.tournament.to_dict(), user_id))
        return result

    # ---- transactional bodies ----

    def _lock_pair(self, txn: LedgerTransaction, tournament_id: str, user_id: str, action: str) -> Tuple[TournamentRecord, UserRecord]:
        tournament = txn.lock_tournament(tournament_id)
        if tournament is None:
            raise RegistrationError(ErrorKind.NOT_FOUND, f"Tournament {tournament_id} not found")

        user = txn.lock_user(user_id)
        if user is None:
            raise RegistrationError(ErrorKind.NOT_FOUND, f"User {user_id} not found")

        sm = TournamentStateMachine.from_state_string(tournament.status)
        if not sm.can_perform(action):
            raise RegistrationError(
                ErrorKind.INVALID_STATUS,
                f"Cannot {action} while tournament is {tournament.status}"
            )
        return tournament, user

    def _register_once(self, tournament_id: str, user_id: str) -> RegistrationResult:
        with self.store.transaction() as txn:
            tournament, user = self._lock_pair(txn, tournament_id, user_id, 'register')

            if tournament.has_participant(user_id):
                raise RegistrationError(
                    ErrorKind.ALREADY_REGISTERED,
                    f"Already registered for {tournament.title}"
                )
            if tournament.is_full:
                raise RegistrationError(
                    ErrorKind.CAPACITY_EXCEEDED,
                    f"Tournament is full ({len(tournament.participants)}/{tournament.max_participants} participants)"
                )
            if user.balance < tournament.entry_fee:
                raise RegistrationError(
                    ErrorKind.INSUFFICIENT_BALANCE,
                    f"Insufficient stars: entry fee is {tournament.entry_fee}, balance is {user.balance}"
                )

            user.balance -= tournament.entry_fee
            tournament.participants.append(user_id)
            if not user.is_enrolled(tournament_id):
                user.enrolled.append(tournament_id)

            txn.save_tournament(tournament)
            txn.save_user(user)

        return RegistrationResult.success(tournament, user)

    def _unregister_once(self, tournament_id: str, user_id: str) -> RegistrationResult:
        with self.store.transaction() as txn:
            tournament, user = self._lock_pair(txn, tournament_id, user_id, 'unregister')

            if not tournament.has_participant(user_id):
                raise RegistrationError(
                    ErrorKind.NOT_REGISTERED,
                    f"Not registered for {tournament.title}"
                )

            user.balance += tournament.entry_fee
            tournament.participants.remove(user_id)
            user.enrolled = [t for t in user.enrolled if t != tournament_id]

            txn.save_tournament(tournament)
            txn.save_user(user)

        return RegistrationResult.success(tournament, user)

    # ---- post-commit ----

    def _after_commit(self, tournament: TournamentRecord, event: Event):
        notify_after_commit(self.cache, self.emitter, tournament.id, event)


def notify_after_commit(cache: Optional[Cache], emitter: Optional[NotificationEmitter], tournament_id: str, event: Event):
    """Invalidate cached reads and hand the event to the emitter. Never raises."""
    if cache is not None:
        try:
            cache.invalidate_tournament(tournament_id)
        except Exception as e:
            logger.error(f"Cache invalidation failed for {tournament_id}: {e}")

    if emitter is not None:
        try:
            emitter.emit(event)
        except Exception as e:
            logger.error(f"Failed to emit {event.type.value} for {tournament_id}: {e}")
