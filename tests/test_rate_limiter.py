"""Tests for the sliding-window login throttle."""

import threading
from unittest.mock import patch

from sessionauth.service.rate_limit import AttemptCounter, AttemptTable, RateLimiter


def _limiter(clock, **kwargs) -> RateLimiter:
    return RateLimiter(clock=clock, **kwargs)


class TestLockout:
    """Failures accumulate to a lockout that lifts after the lockout period."""

    def test_five_failures_lock_the_key(self, clock):
        limiter = _limiter(clock)
        for _ in range(4):
            limiter.record_failure("10.0.0.1:alice")
            assert not limiter.is_limited("10.0.0.1:alice")

        counter = limiter.record_failure("10.0.0.1:alice")

        assert counter.attempts == 5
        assert counter.locked_until == clock.now + 1800
        assert limiter.is_limited("10.0.0.1:alice")
        assert limiter.remaining_attempts("10.0.0.1:alice") == 0

    def test_lock_lifts_after_lockout_and_count_resets(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_failure("k")

        clock.advance(1799)
        assert limiter.is_limited("k")

        clock.advance(2)
        assert not limiter.is_limited("k")
        assert limiter.remaining_attempts("k") == 5
        assert limiter.seconds_until_unlock("k") == 0

    def test_failure_after_lapsed_lock_starts_fresh_counter(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_failure("k")
        clock.advance(1801)

        counter = limiter.record_failure("k")

        assert counter.attempts == 1
        assert counter.locked_until is None

    def test_seconds_until_unlock_rounds_up(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_failure("k")
        clock.advance(0.5)

        assert limiter.seconds_until_unlock("k") == 1800

    def test_lockout_is_logged_once(self, clock):
        limiter = _limiter(clock, max_attempts=2)
        with patch("sessionauth.service.rate_limit.logger") as mock_logger:
            limiter.record_failure("k")
            limiter.record_failure("k")
            limiter.record_failure("k")

        events = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert events == ["rate_limit_lockout_triggered"]


class TestWindow:
    """Counters outside the window no longer count."""

    def test_expired_window_resets_count(self, clock):
        limiter = _limiter(clock)
        limiter.record_failure("k")
        limiter.record_failure("k")
        assert limiter.remaining_attempts("k") == 3

        clock.advance(901)

        assert limiter.remaining_attempts("k") == 5
        assert limiter.record_failure("k").attempts == 1

    def test_failures_within_window_accumulate(self, clock):
        limiter = _limiter(clock)
        limiter.record_failure("k")
        clock.advance(899)
        counter = limiter.record_failure("k")

        assert counter.attempts == 2
        assert counter.window_start == clock.now - 899

    def test_success_clears_counter(self, clock):
        limiter = _limiter(clock)
        for _ in range(3):
            limiter.record_failure("k")

        limiter.record_success("k")

        assert limiter.remaining_attempts("k") == 5
        assert not limiter.is_limited("k")

    def test_keys_are_independent(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_failure("10.0.0.1:alice")

        assert limiter.is_limited("10.0.0.1:alice")
        assert not limiter.is_limited("10.0.0.2:alice")
        assert limiter.remaining_attempts("10.0.0.1:bob") == 5


class TestSweep:
    """Sweeping drops counters nobody needs any more."""

    def test_sweep_keeps_active_lock_and_live_window(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_failure("locked")
        limiter.record_failure("recent")

        assert limiter.sweep() == 0

    def test_sweep_removes_stale_counters(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_failure("locked")
        limiter.record_failure("recent")

        clock.advance(2000)

        assert limiter.sweep() == 2
        assert len(limiter._table) == 0


class TestConcurrency:
    """Concurrent updates to one key never lose an increment."""

    def test_threaded_failures_are_all_counted(self, clock):
        limiter = _limiter(clock, max_attempts=10_000)
        threads = [
            threading.Thread(
                target=lambda: [limiter.record_failure("shared") for _ in range(50)]
            )
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert limiter.remaining_attempts("shared") == 10_000 - 400

    def test_compute_removes_key_when_fn_returns_none(self):
        table = AttemptTable(stripes=4)
        table.compute("k", lambda _current: AttemptCounter(window_start=1.0, attempts=1))
        assert len(table) == 1

        table.compute("k", lambda _current: None)

        assert len(table) == 0
