"""
auth/lockout.py -- Progressive account lockout policy.

Pure state-machine logic over a user's failure counters. Nothing here touches
the database or the clock: callers pass `now` in and persist the returned
state through UserStore.apply_lockout_state(). That keeps the rules testable
without freezing time.

Rules:
  - A failure after a lock has lapsed restarts the counter at 1.
  - Otherwise the counter increments; reaching the threshold while not
    already locked sets lock_until = now + duration.
  - An active lock is never extended by further failures. Handlers reject
    locked accounts before the password check, so in practice this policy is
    not consulted during a lock at all.
  - Success clears the counter and the lock.

The counter only resets on success or on natural expiry -- an attacker cannot
refresh a lock by continuing to guess.

Concurrency: the transition is read-modify-write. Two concurrent failures for
the same user may lose one increment; that delays the lock by one attempt and
is accepted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import NamedTuple

from auth.models import User

DEFAULT_THRESHOLD = 5
DEFAULT_DURATION = timedelta(hours=2)


@dataclass(frozen=True)
class LockoutState:
    """The slice of a User that the lockout policy reads and writes."""

    login_attempts: int = 0
    lock_until: datetime | None = None
    last_failed_login: datetime | None = None
    last_login: datetime | None = None

    @classmethod
    def of(cls, user: User) -> "LockoutState":
        return cls(
            login_attempts=user.login_attempts,
            lock_until=user.lock_until,
            last_failed_login=user.last_failed_login,
            last_login=user.last_login,
        )


class FailedLogin(NamedTuple):
    """Result of applying one failed attempt."""

    state: LockoutState
    locked_now: bool  # True only for the failure that started a new lock


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = DEFAULT_THRESHOLD
    duration: timedelta = DEFAULT_DURATION

    def is_locked(self, state: LockoutState, now: datetime) -> bool:
        return state.lock_until is not None and state.lock_until > now

    def retry_after_seconds(self, state: LockoutState, now: datetime) -> int:
        """Seconds until the lock lapses, rounded up. 0 when not locked."""
        if not self.is_locked(state, now):
            return 0
        return math.ceil((state.lock_until - now).total_seconds())

    def on_failed_login(self, state: LockoutState, now: datetime) -> FailedLogin:
        # Previous lock has expired -- restart at 1.
        if state.lock_until is not None and state.lock_until < now:
            return FailedLogin(
                replace(state, login_attempts=1, lock_until=None, last_failed_login=now),
                locked_now=False,
            )

        attempts = state.login_attempts + 1
        lock_until = state.lock_until
        locked_now = False
        if attempts >= self.threshold and not self.is_locked(state, now):
            lock_until = now + self.duration
            locked_now = True
        return FailedLogin(
            replace(state, login_attempts=attempts, lock_until=lock_until, last_failed_login=now),
            locked_now=locked_now,
        )

    def on_successful_login(self, state: LockoutState, now: datetime) -> LockoutState:
        return LockoutState(login_attempts=0, lock_until=None, last_failed_login=None, last_login=now)
