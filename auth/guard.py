"""
auth/guard.py -- Brute-force guard: sliding-window attempt counters, lockout and backoff.

Policy (both keys are tracked; either one tripping blocks the attempt):
  Pair counter    (principal, origin): guard_max_attempts failures inside any
                  span of guard_window_seconds lock that pair. One noisy
                  origin cannot lock the principal out everywhere.
  Global counter  (principal, "*"):    guard_principal_max_attempts failures
                  from any mix of origins lock the principal everywhere. This
                  catches distributed attacks that stay under every per-origin
                  cap. The global cap is higher than the pair cap.

Window: sliding. Every attempt is stored with its timestamp in
attempt_events and the count is taken over (now - W, now]. There is no
boundary at which the count restarts.

Reservation: check_and_record_attempt() records the attempt before the
credential is verified, counting it as a failure until record_outcome()
clears it. An attempt is only admitted while fewer than the cap are
outstanding, so N concurrent requests can never all reach the hasher.

Backoff: the n-th lockout inside one rolling guard_lockout_period_seconds
lasts min(base * 2**(n-1), max). Lockouts after the period has elapsed start
again from base.

Success clears the outstanding attempts of both counters. It does not clear
the lockout history, so an attacker who sandwiches guesses between a
legitimate user's logins still escalates.

Atomicity: every store operation opens its transaction by updating the
counter rows it is about to decide on. That write takes the row lock
(the database write lock on SQLite) before anything is read, so two workers
deciding on the same counter run one after the other, never interleaved.

Fail closed: if the counter store cannot be reached, check_and_record_attempt
raises StorageUnavailable and the login does not proceed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AttemptCounter
from auth.schema import attempt_counters, attempt_events, storage_errors
from core.config import Settings

logger = logging.getLogger("gatehouse.guard")

GLOBAL_ORIGIN = "*"


@dataclass(frozen=True)
class GuardPolicy:
    max_attempts: int = 5
    window_seconds: float = 900
    base_lockout_seconds: float = 60
    max_lockout_seconds: float = 3600
    lockout_period_seconds: float = 24 * 3600
    principal_max_attempts: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> GuardPolicy:
        return cls(
            max_attempts=settings.guard_max_attempts,
            window_seconds=settings.guard_window_seconds,
            base_lockout_seconds=settings.guard_base_lockout_seconds,
            max_lockout_seconds=settings.guard_max_lockout_seconds,
            lockout_period_seconds=settings.guard_lockout_period_seconds,
            principal_max_attempts=settings.guard_principal_max_attempts,
        )

    def lockout_duration(self, lockout_number: int) -> float:
        return min(self.base_lockout_seconds * 2 ** (lockout_number - 1), self.max_lockout_seconds)


@dataclass(frozen=True)
class AttemptDecision:
    """Result of a guard check; passed back to record_outcome()."""

    principal_key: str
    origin_key: str
    allowed: bool
    retry_after: float = 0.0
    principal_locked: bool = False


# ---------------------------------------------------------------------------
# Counter storage
# ---------------------------------------------------------------------------


class AttemptStore(Protocol):
    def reserve(self, principal_key: str, limits: dict[str, int], now: float, window: float) -> float: ...

    def try_lock(
        self, principal_key: str, origin_key: str, threshold: int, now: float, policy: GuardPolicy
    ) -> float: ...

    def clear(self, principal_key: str, origin_keys: Iterable[str]) -> None: ...

    def unlock(self, principal_key: str, origin_key: str | None = None) -> int: ...

    def get(self, principal_key: str, origin_key: str, since: float = 0.0) -> AttemptCounter | None: ...

    def purge(self, before: float) -> int: ...


class SqlAttemptStore:
    """AttemptStore on the shared SQL engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @staticmethod
    def _key(principal_key: str, origin_key: str):
        return (attempt_counters.c.principal_key == principal_key) & (attempt_counters.c.origin_key == origin_key)

    @staticmethod
    def _event_key(principal_key: str, origin_key: str):
        return (attempt_events.c.principal_key == principal_key) & (attempt_events.c.origin_key == origin_key)

    def _ensure_rows(self, principal_key: str, origin_keys: Iterable[str]) -> None:
        for origin_key in origin_keys:
            try:
                with self.engine.begin() as conn:
                    exists = conn.execute(
                        select(attempt_counters.c.principal_key).where(self._key(principal_key, origin_key))
                    ).fetchone()
                    if exists is None:
                        conn.execute(
                            insert(attempt_counters).values(principal_key=principal_key, origin_key=origin_key)
                        )
            except IntegrityError:
                # Another worker created the row first.
                pass

    def _claim(self, conn: Connection, principal_key: str, origin_key: str, now: float) -> None:
        """Touch the counter row; the write serialises everyone deciding on it."""
        conn.execute(
            update(attempt_counters).where(self._key(principal_key, origin_key)).values(last_attempt_at=now)
        )

    def _outstanding(
        self, conn: Connection, principal_key: str, origin_key: str, since: float
    ) -> tuple[int, float | None]:
        count, oldest = conn.execute(
            select(func.count(attempt_events.c.id), func.min(attempt_events.c.at)).where(
                self._event_key(principal_key, origin_key) & (attempt_events.c.at > since)
            )
        ).one()
        return count, oldest

    def reserve(self, principal_key: str, limits: dict[str, int], now: float, window: float) -> float:
        """Record one attempt against every origin key in limits, or none of them.

        limits maps origin_key -> cap. Returns 0.0 when the attempt was
        recorded, otherwise seconds until every counter admits attempts again
        (a live lock, or a full window whose oldest entry has to slide out).
        """
        since = now - window
        with storage_errors("reserve_attempt"):
            self._ensure_rows(principal_key, limits)
            with self.engine.begin() as conn:
                for origin_key in limits:
                    self._claim(conn, principal_key, origin_key, now)
                retry_after = 0.0
                for origin_key, cap in limits.items():
                    locked_until = conn.execute(
                        select(attempt_counters.c.locked_until).where(self._key(principal_key, origin_key))
                    ).scalar_one_or_none() or 0.0
                    retry_after = max(retry_after, locked_until - now)
                    count, oldest = self._outstanding(conn, principal_key, origin_key, since)
                    if count >= cap and oldest is not None:
                        retry_after = max(retry_after, oldest + window - now)
                if retry_after > 0:
                    return retry_after
                conn.execute(
                    insert(attempt_events),
                    [{"principal_key": principal_key, "origin_key": origin_key, "at": now} for origin_key in limits],
                )
        return 0.0

    def try_lock(self, principal_key: str, origin_key: str, threshold: int, now: float, policy: GuardPolicy) -> float:
        """Lock the counter if threshold attempts are outstanding in the window.

        Returns locked_until of the lock in force after the call (0.0 if none).
        Only one worker creates a given lock; the others observe it.
        """
        with storage_errors("lock_attempt_counter"), self.engine.begin() as conn:
            self._claim(conn, principal_key, origin_key, now)
            row = conn.execute(select(attempt_counters).where(self._key(principal_key, origin_key))).fetchone()
            if row is None:
                return 0.0
            if row.locked_until > now:
                return row.locked_until
            count, _ = self._outstanding(conn, principal_key, origin_key, now - policy.window_seconds)
            if count < threshold:
                return 0.0
            in_period = row.lockout_count > 0 and now - row.lockout_period_start < policy.lockout_period_seconds
            lockout_number = row.lockout_count + 1 if in_period else 1
            period_start = row.lockout_period_start if in_period else now
            locked_until = now + policy.lockout_duration(lockout_number)
            conn.execute(
                update(attempt_counters)
                .where(self._key(principal_key, origin_key))
                .values(locked_until=locked_until, lockout_count=lockout_number, lockout_period_start=period_start)
            )
            # The lock consumes the window; counting restarts when it lifts.
            conn.execute(delete(attempt_events).where(self._event_key(principal_key, origin_key)))
        logger.warning(
            "Locked %r from %r for %.0fs (lockout #%d)",
            principal_key,
            origin_key,
            locked_until - now,
            lockout_number,
        )
        return locked_until

    def clear(self, principal_key: str, origin_keys: Iterable[str]) -> None:
        """Drop outstanding attempts. Locks and lockout history are untouched."""
        with storage_errors("clear_attempts"), self.engine.begin() as conn:
            for origin_key in origin_keys:
                conn.execute(delete(attempt_events).where(self._event_key(principal_key, origin_key)))

    def unlock(self, principal_key: str, origin_key: str | None = None) -> int:
        """Lift the lock and drop outstanding attempts of one counter, or all of a principal's.

        Lockout history is kept, so the next lockout still escalates.
        Returns the number of counters touched.
        """
        counter_where = attempt_counters.c.principal_key == principal_key
        event_where = attempt_events.c.principal_key == principal_key
        if origin_key is not None:
            counter_where = self._key(principal_key, origin_key)
            event_where = self._event_key(principal_key, origin_key)
        with storage_errors("unlock_attempt_counter"), self.engine.begin() as conn:
            touched = conn.execute(update(attempt_counters).where(counter_where).values(locked_until=0)).rowcount
            conn.execute(delete(attempt_events).where(event_where))
        return touched

    def get(self, principal_key: str, origin_key: str, since: float = 0.0) -> AttemptCounter | None:
        with storage_errors("get_attempt_counter"), self.engine.connect() as conn:
            row = conn.execute(select(attempt_counters).where(self._key(principal_key, origin_key))).fetchone()
            if row is None:
                return None
            count, _ = self._outstanding(conn, principal_key, origin_key, since)
        return _row_to_counter(row, count)

    def purge(self, before: float) -> int:
        """Delete attempts older than before, then counters with nothing live left.

        Returns the number of counters deleted.
        """
        with storage_errors("purge_attempt_counters"), self.engine.begin() as conn:
            conn.execute(delete(attempt_events).where(attempt_events.c.at < before))
            result = conn.execute(
                delete(attempt_counters).where(
                    (attempt_counters.c.last_attempt_at < before)
                    & (attempt_counters.c.locked_until < before)
                    & (attempt_counters.c.lockout_period_start < before)
                )
            )
        return result.rowcount

    def counters_for(self, principal_key: str) -> list[AttemptCounter]:
        with storage_errors("list_attempt_counters"), self.engine.connect() as conn:
            rows = conn.execute(
                select(attempt_counters).where(attempt_counters.c.principal_key == principal_key)
            ).fetchall()
            return [_row_to_counter(r, self._outstanding(conn, r.principal_key, r.origin_key, 0.0)[0]) for r in rows]


def _row_to_counter(row, failures: int) -> AttemptCounter:
    return AttemptCounter(
        principal_key=row.principal_key,
        origin_key=row.origin_key,
        failures=failures,
        last_attempt_at=row.last_attempt_at,
        lockout_count=row.lockout_count,
        lockout_period_start=row.lockout_period_start,
        locked_until=row.locked_until,
    )


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class BruteForceGuard:
    """Gatekeeper consulted before (check) and after (record) credential checks.

    Usage:
        decision = guard.check_and_record_attempt("bob", "203.0.113.7")
        if not decision.allowed:
            raise AccountLocked(decision.retry_after)
        ok = hasher.verify(...)
        guard.record_outcome(decision, success=ok)

    An admitted attempt that never reaches record_outcome() (the caller
    crashed, storage failed mid-login) stays counted as a failure.
    """

    def __init__(
        self,
        store: AttemptStore,
        policy: GuardPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policy = policy or GuardPolicy()
        self.clock = clock

    def check_and_record_attempt(self, principal_key: str, origin_key: str) -> AttemptDecision:
        """Reserve an attempt on both counters, or report the longest remaining block."""
        policy = self.policy
        limits = {origin_key: policy.max_attempts, GLOBAL_ORIGIN: policy.principal_max_attempts}
        retry_after = self.store.reserve(principal_key, limits, self.clock(), policy.window_seconds)
        if retry_after > 0:
            logger.info("Attempt blocked for %r from %r (%.0fs remaining)", principal_key, origin_key, retry_after)
            return AttemptDecision(principal_key, origin_key, allowed=False, retry_after=retry_after)
        return AttemptDecision(principal_key, origin_key, allowed=True)

    def record_outcome(self, decision: AttemptDecision, success: bool) -> AttemptDecision:
        """Feed the verification result back. Returns the post-outcome state."""
        if not decision.allowed:
            return decision
        pk, ok = decision.principal_key, decision.origin_key
        if success:
            self.store.clear(pk, (ok, GLOBAL_ORIGIN))
            return AttemptDecision(pk, ok, allowed=True)

        # The reservation already counted this failure; only the lock is left to decide.
        now = self.clock()
        pair_until = self.store.try_lock(pk, ok, self.policy.max_attempts, now, self.policy)
        global_until = self.store.try_lock(pk, GLOBAL_ORIGIN, self.policy.principal_max_attempts, now, self.policy)
        retry_after = max(pair_until, global_until) - now
        if retry_after > 0:
            return AttemptDecision(
                pk, ok, allowed=False, retry_after=retry_after, principal_locked=global_until > now
            )
        return AttemptDecision(pk, ok, allowed=True)

    def reset_principal(self, principal_key: str) -> None:
        """Lift every lock on the principal (password reset, admin unlock)."""
        touched = self.store.unlock(principal_key)
        logger.info("Unlocked %d attempt counter(s) for %r", touched, principal_key)
