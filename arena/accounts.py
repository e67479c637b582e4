import time
import logging
from datetime import datetime
from typing import Callable, Optional

from .errors import ErrorKind, RegistrationError, RegistrationResult
from .ledger_store import LedgerStore
from .records import UserRecord
from .registration_service import run_with_retries

logger = logging.getLogger(__name__)

DEFAULT_STARTING_BALANCE = 1000


class Accounts:
    """
    User accounts and star balances.

    Users are created on first authenticated access. Balances change only
    through award/deduct here and through the registration service.
    """

    def __init__(
        self,
        store: LedgerStore,
        starting_balance: int = DEFAULT_STARTING_BALANCE,
        max_retries: int = 3,
        retry_backoff: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.starting_balance = starting_balance
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._sleep = sleep

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.store.get_user(user_id)

    def get_or_create_user(self, user_id: str, username: str = None) -> RegistrationResult:
        """Return the user, creating it with the starting balance if new."""
        if not isinstance(user_id, str) or not user_id.strip():
            return RegistrationResult.failure(ErrorKind.VALIDATION_ERROR, "User id is required")

        def operation():
            with self.store.transaction() as txn:
                user = txn.lock_user(user_id)
                if user is None:
                    user = UserRecord(
                        id=user_id,
                        username=username or f"user_{user_id}",
                        balance=self.starting_balance,
                        created_at=datetime.utcnow(),
                    )
                    txn.add_user(user)
                    logger.info(f"Created user {user_id} with {self.starting_balance} stars")
            return RegistrationResult.success(user=user)

        return run_with_retries(
            operation, f"Get-or-create of user {user_id}",
            self.max_retries, self.retry_backoff, self._sleep,
        )

    def award(self, user_id: str, amount) -> RegistrationResult:
        """Credit stars to a user."""
        invalid = self._validate_amount(amount)
        if invalid:
            return invalid
        return self._adjust(user_id, amount)

    def deduct(self, user_id: str, amount) -> RegistrationResult:
        """Debit stars from a user. Never takes the balance below zero."""
        invalid = self._validate_amount(amount)
        if invalid:
            return invalid
        return self._adjust(user_id, -amount)

    def _validate_amount(self, amount) -> Optional[RegistrationResult]:
        if isinstance(amount, bool) or not isinstance(amount, int):
            return RegistrationResult.failure(ErrorKind.VALIDATION_ERROR, "Amount must be a whole number of stars")
        if amount < 0:
            return RegistrationResult.failure(ErrorKind.VALIDATION_ERROR, "Amount must not be negative")
        return None

    def _adjust(self, user_id: str, delta: int) -> RegistrationResult:
        def operation():
            with self.store.transaction() as txn:
                user = txn.lock_user(user_id)
                if user is None:
                    raise RegistrationError(ErrorKind.NOT_FOUND, f"User {user_id} not found")
                if user.balance + delta < 0:
                    raise RegistrationError(
                        ErrorKind.INSUFFICIENT_BALANCE,
                        f"Insufficient stars: requested {-delta}, balance is {user.balance}"
                    )
                user.balance += delta
                txn.save_user(user)
            return RegistrationResult.success(user=user)

        result = run_with_retries(
            operation, f"Balance adjustment of {delta:+d} for {user_id}",
            self.max_retries, self.retry_backoff, self._sleep,
        )
        if result.ok:
            logger.info(f"Adjusted balance of {user_id} by {delta:+d}, now {result.user.balance}")
        return result
