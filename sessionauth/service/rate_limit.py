from __future__ import annotations

import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from sessionauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_SECONDS = 15 * 60
DEFAULT_LOCKOUT_SECONDS = 30 * 60

_STRIPES = 64


@dataclass(frozen=True)
class AttemptCounter:
    window_start: float
    attempts: int
    locked_until: Optional[float] = None

    def lock_active(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def lock_lapsed(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until <= now

    def window_expired(self, now: float, window_seconds: int) -> bool:
        return now > self.window_start + window_seconds


class AttemptTable:
    """Counters keyed by subject, guarded by a fixed set of lock stripes.

    ``compute`` runs the read-check-write for one key while holding that key's
    stripe, so increments are never lost and unrelated keys rarely contend.
    """

    def __init__(self, stripes: int = _STRIPES) -> None:
        self._counters: Dict[str, AttemptCounter] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, key: str) -> threading.Lock:
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        return self._locks[int.from_bytes(digest[:4], "big") % len(self._locks)]

    def compute(
        self,
        key: str,
        fn: Callable[[Optional[AttemptCounter]], Optional[AttemptCounter]],
    ) -> Optional[AttemptCounter]:
        """Replace the counter for ``key`` with ``fn(current)``; None removes it."""
        with self._lock_for(key):
            updated = fn(self._counters.get(key))
            if updated is None:
                self._counters.pop(key, None)
            else:
                self._counters[key] = updated
            return updated

    def keys(self) -> list[str]:
        return list(self._counters.keys())

    def __len__(self) -> int:
        return len(self._counters)


class RateLimiter:
    """Sliding-window failure counter with a fixed lockout once the max is hit."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        lockout_seconds: int = DEFAULT_LOCKOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        name: str = "login",
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.name = name
        self._clock = clock
        self._table = AttemptTable()

    def _is_stale(self, counter: AttemptCounter, now: float) -> bool:
        if counter.lock_active(now):
            return False
        return counter.lock_lapsed(now) or counter.window_expired(now, self.window_seconds)

    def is_limited(self, key: str) -> bool:
        now = self._clock()
        limited = False

        def check(current: Optional[AttemptCounter]) -> Optional[AttemptCounter]:
            nonlocal limited
            if current is None:
                return None
            if current.lock_active(now):
                limited = True
                return current
            if self._is_stale(current, now):
                return None
            limited = current.attempts >= self.max_attempts
            return current

        self._table.compute(key, check)
        return limited

    def record_failure(self, key: str) -> AttemptCounter:
        now = self._clock()
        lock_triggered = False

        def bump(current: Optional[AttemptCounter]) -> AttemptCounter:
            nonlocal lock_triggered
            if current is None or self._is_stale(current, now):
                counter = AttemptCounter(window_start=now, attempts=1)
            else:
                counter = AttemptCounter(
                    window_start=current.window_start,
                    attempts=current.attempts + 1,
                    locked_until=current.locked_until,
                )
            if counter.attempts >= self.max_attempts and counter.locked_until is None:
                lock_triggered = True
                counter = AttemptCounter(
                    window_start=counter.window_start,
                    attempts=counter.attempts,
                    locked_until=now + self.lockout_seconds,
                )
            return counter

        counter = self._table.compute(key, bump)
        if lock_triggered:
            logger.warning(
                "rate_limit_lockout_triggered",
                limiter=self.name,
                key=key,
                attempts=counter.attempts,
                lockout_seconds=self.lockout_seconds,
            )
        return counter

    def record_success(self, key: str) -> None:
        self._table.compute(key, lambda _current: None)

    def remaining_attempts(self, key: str) -> int:
        now = self._clock()
        remaining = self.max_attempts

        def read(current: Optional[AttemptCounter]) -> Optional[AttemptCounter]:
            nonlocal remaining
            if current is None or current.window_expired(now, self.window_seconds):
                return current
            remaining = max(0, self.max_attempts - current.attempts)
            return current

        self._table.compute(key, read)
        return remaining

    def seconds_until_unlock(self, key: str) -> int:
        now = self._clock()
        seconds = 0

        def read(current: Optional[AttemptCounter]) -> Optional[AttemptCounter]:
            nonlocal seconds
            if current is not None and current.lock_active(now):
                seconds = int(math.ceil(current.locked_until - now))
            return current

        self._table.compute(key, read)
        return seconds

    def sweep(self) -> int:
        """Drop counters whose window and lock have both lapsed."""
        now = self._clock()
        removed = 0
        for key in self._table.keys():
            dropped = False

            def prune(current: Optional[AttemptCounter]) -> Optional[AttemptCounter]:
                nonlocal dropped
                if current is None:
                    return None
                if current.lock_active(now):
                    return current
                if current.locked_until is not None or current.window_expired(
                    now, self.window_seconds
                ):
                    dropped = True
                    return None
                return current

            self._table.compute(key, prune)
            if dropped:
                removed += 1
        if removed:
            logger.info("rate_limit_counters_swept", limiter=self.name, removed=removed)
        return removed
