"""
Per-user daily credit ledger.

Reserves credits before a generation call and reconciles them with the real
cost afterwards. Every mutation is a conditional write against the durable
user store, retried a bounded number of times on conflict, so the daily
limit holds across threads and processes. A fixed set of striped locks,
keyed by user, serializes callers inside one process as a fast path.

Accounting rules:
1. A record whose date is not today (UTC) is reset to zero before anything
   else, and the reset is persisted even when the request is rejected.
2. A reservation that would push usage past the daily limit is rejected and
   leaves usage untouched.
3. Reconciliation refunds over-estimates and charges under-estimates, capped
   at the daily limit.
"""

import logging
import threading
import zlib
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, List, Tuple

from .pricing import DEFAULT_POLICY, CreditPolicy, calculate_credits
from .token_counter import TokenUsage
from calm_gateway.storage.models import UsageRecord
from calm_gateway.storage.repository import StoreConflictError, UserRepository

logger = logging.getLogger(__name__)

MAX_SAVE_ATTEMPTS = 3
LOCK_STRIPES = 64


class UserNotFoundError(Exception):
    """Raised when the ledger is asked about a user with no usage record."""

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class QuotaExceededError(Exception):
    """Raised when a reservation would exceed the user's daily credit limit.

    An expected outcome rather than a fault: it clears at the next UTC day.
    """

    def __init__(self, user_id: str, remaining: int, limit: int, requested: int):
        super().__init__(
            "You have exceeded your daily credit limit. Please try again tomorrow. "
            f"({remaining} of {limit} credits remaining, {requested} requested)"
        )
        self.user_id = user_id
        self.remaining = remaining
        self.limit = limit
        self.requested = requested


class LedgerContentionError(Exception):
    """Raised when concurrent writers kept invalidating a ledger update."""

    def __init__(self, user_id: str, attempts: int):
        super().__init__(f"Could not update usage for {user_id} after {attempts} attempts")
        self.user_id = user_id
        self.attempts = attempts


@dataclass(frozen=True)
class UsageSnapshot:
    """User's credit position right after a ledger operation."""
    user_id: str
    used: int
    remaining: int
    limit: int
    date: str
    charged: int = 0  # credits applied by the operation that produced this snapshot


def utc_today() -> str:
    """Current UTC date as YYYY-MM-DD."""
    return datetime.now(timezone.utc).date().isoformat()


class UsageLedger:
    """Reserve-or-reject accounting over a durable user store."""

    def __init__(
        self,
        users: UserRepository,
        policy: CreditPolicy = DEFAULT_POLICY,
        max_attempts: int = MAX_SAVE_ATTEMPTS,
        today: Callable[[], str] = utc_today,
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self.users = users
        self.policy = policy
        self.max_attempts = max_attempts
        self._today = today
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _user_lock(self, user_id: str) -> threading.Lock:
        # Users sharing a stripe serialize against each other; the store stays authoritative.
        return self._locks[zlib.crc32(user_id.encode("utf-8")) % LOCK_STRIPES]

    def _load(self, user_id: str) -> UsageRecord:
        record = self.users.get_user(user_id)
        if record is None:
            raise UserNotFoundError(user_id)
        return record

    def _save(self, record: UsageRecord) -> UsageRecord:
        try:
            return self.users.save_user(record)
        except LookupError:
            raise UserNotFoundError(record.user_id)

    @staticmethod
    def _roll_over(record: UsageRecord, today: str) -> Tuple[UsageRecord, bool]:
        if record.last_request_date == today:
            return record, False
        return replace(record, credits_used_today=0, last_request_date=today), True

    def _snapshot(self, record: UsageRecord, charged: int) -> UsageSnapshot:
        limit = self.policy.daily_limit
        return UsageSnapshot(
            user_id=record.user_id,
            used=record.credits_used_today,
            remaining=max(0, limit - record.credits_used_today),
            limit=limit,
            date=record.last_request_date,
            charged=charged,
        )

    def cost_of(self, input_tokens: int, output_tokens: int) -> int:
        """Credits for the given token counts under this ledger's policy."""
        return calculate_credits(TokenUsage(input_tokens, output_tokens), self.policy)

    def reserve(self, user_id: str, input_tokens: int, output_tokens_estimate: int) -> UsageSnapshot:
        """Charge the estimated cost of a request, or reject it.

        Args:
            user_id: User to charge
            input_tokens: Estimated prompt tokens
            output_tokens_estimate: Estimated reply tokens

        Returns:
            Snapshot after the charge; ``charged`` is the reserved cost

        Raises:
            UserNotFoundError: If the user has no usage record
            QuotaExceededError: If the cost does not fit in today's allowance
            LedgerContentionError: If conflicting writes exhausted the retries
        """
        cost = self.cost_of(input_tokens, output_tokens_estimate)
        limit = self.policy.daily_limit

        with self._user_lock(user_id):
            for attempt in range(1, self.max_attempts + 1):
                record, rolled = self._roll_over(self._load(user_id), self._today())
                used = record.credits_used_today

                if used + cost > limit:
                    if rolled:
                        try:
                            self._save(record)
                        except StoreConflictError:
                            logger.debug("Rollover write conflict for %s (attempt %d)", user_id, attempt)
                            continue
                    logger.info(
                        "Quota exceeded for %s: requested %d, remaining %d", user_id, cost, limit - used
                    )
                    raise QuotaExceededError(user_id, remaining=max(0, limit - used), limit=limit, requested=cost)

                try:
                    stored = self._save(replace(record, credits_used_today=used + cost))
                except StoreConflictError:
                    logger.debug("Reservation write conflict for %s (attempt %d)", user_id, attempt)
                    continue
                return self._snapshot(stored, charged=cost)

        logger.error("Giving up reserving credits for %s after %d attempts", user_id, self.max_attempts)
        raise LedgerContentionError(user_id, self.max_attempts)

    def reconcile(
        self,
        user_id: str,
        input_tokens: int,
        actual_output_tokens: int,
        reservation: UsageSnapshot,
    ) -> UsageSnapshot:
        """Correct a reservation to the real cost of the request.

        The difference between the actual cost and ``reservation.charged`` is
        applied: refunds never drop usage below zero and extra charges never
        lift it past the daily limit. If the UTC day changed since the
        reservation, yesterday's charge cannot be refunded and only a
        positive difference lands on the fresh counter.

        Returns:
            Snapshot after the correction; ``charged`` is the applied difference

        Raises:
            UserNotFoundError: If the user has no usage record
            LedgerContentionError: If conflicting writes exhausted the retries
        """
        delta = self.cost_of(input_tokens, actual_output_tokens) - reservation.charged
        limit = self.policy.daily_limit

        with self._user_lock(user_id):
            for attempt in range(1, self.max_attempts + 1):
                today = self._today()
                record, rolled = self._roll_over(self._load(user_id), today)
                applied = delta if reservation.date == today else max(delta, 0)
                used = record.credits_used_today

                if applied > 0:
                    new_used = max(used, min(limit, used + applied))
                    if new_used < used + applied:
                        logger.warning(
                            "Reconciled cost for %s exceeds the daily limit; capping usage at %d",
                            user_id,
                            limit,
                        )
                else:
                    new_used = max(0, used + applied)

                if new_used == used and not rolled:
                    return self._snapshot(record, charged=0)

                try:
                    stored = self._save(replace(record, credits_used_today=new_used))
                except StoreConflictError:
                    logger.debug("Reconcile write conflict for %s (attempt %d)", user_id, attempt)
                    continue
                return self._snapshot(stored, charged=new_used - used)

        logger.error("Giving up reconciling credits for %s after %d attempts", user_id, self.max_attempts)
        raise LedgerContentionError(user_id, self.max_attempts)

    def snapshot(self, user_id: str) -> UsageSnapshot:
        """Read-only view of the user's position today; writes nothing."""
        record, _ = self._roll_over(self._load(user_id), self._today())
        return self._snapshot(record, charged=0)
