"""Tests for refresh record lifecycle: capacity, validation, rotation and purge."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from sessionauth.service.errors import AuthFailure, FailureKind
from sessionauth.service.refresh_tokens import RefreshTokenStore
from sessionauth.storage.memory import MemoryStore
from sessionauth.storage.models import RefreshRecord


class DateClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def date_clock():
    return DateClock()


@pytest.fixture
def store():
    memory = MemoryStore()
    memory.create_principal("alice", "alice@example.com", "hash", "Alice A")
    memory.create_principal("bob", "bob@example.com", "hash", "Bob B")
    return memory


@pytest.fixture
def tokens(store, date_clock):
    return RefreshTokenStore(store, ttl_seconds=3600, max_active=5, clock=date_clock)


@pytest.fixture
def alice(store):
    return store.get_principal("alice")


class TestCreate:
    """New records and the per-principal capacity bound."""

    def test_create_sets_expiry_and_metadata(self, tokens, alice, date_clock):
        record = tokens.create(alice, "pytest-agent", "10.0.0.1")

        assert record.username == "alice"
        assert record.expires_at == date_clock.now + timedelta(seconds=3600)
        assert record.user_agent == "pytest-agent"
        assert record.ip_address == "10.0.0.1"
        assert len(record.token) >= 48
        assert tokens.find(record.token) is not None

    def test_tokens_are_unique(self, tokens, alice):
        values = {tokens.create(alice).token for _ in range(4)}

        assert len(values) == 4

    def test_capacity_keeps_at_most_five_active(self, tokens, alice):
        for _ in range(5):
            tokens.create(alice)
        assert tokens.count_active(alice) == 5

        newest = tokens.create(alice)

        assert tokens.count_active(alice) == 1
        assert tokens.find(newest.token) is not None

    def test_capacity_is_per_principal(self, tokens, store, alice):
        bob = store.get_principal("bob")
        bob_record = tokens.create(bob)
        for _ in range(6):
            tokens.create(alice)

        assert tokens.find(bob_record.token) is not None
        assert tokens.count_active(bob) == 1

    def test_concurrent_creates_respect_capacity(self, tokens, alice):
        threads = [threading.Thread(target=tokens.create, args=(alice,)) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert 1 <= tokens.count_active(alice) <= 5


class TestValidate:
    """Validation and the lazy revoke of expired records."""

    def test_fresh_record_is_valid(self, tokens, alice):
        assert tokens.validate(tokens.create(alice))

    def test_expired_record_is_revoked_on_validate(self, tokens, store, alice, date_clock):
        record = tokens.create(alice)
        date_clock.advance(3600)

        assert not tokens.validate(record)
        assert store.get_refresh_record(record.token).revoked
        assert tokens.find(record.token) is None

    def test_revoke_is_idempotent(self, tokens, alice):
        record = tokens.create(alice)

        tokens.revoke(record)
        tokens.revoke(record)

        assert tokens.find(record.token) is None
        assert not tokens.validate(record)

    def test_find_ignores_unknown_and_empty(self, tokens):
        assert tokens.find("does-not-exist") is None
        assert tokens.find("") is None

    def test_revoke_all(self, tokens, alice):
        for _ in range(3):
            tokens.create(alice)

        assert tokens.revoke_all(alice) == 3
        assert tokens.count_active(alice) == 0


class TestRotate:
    """Rotation swaps one active record for another exactly once."""

    def test_rotate_invalidates_old_immediately(self, tokens, alice):
        old = tokens.create(alice)

        new = tokens.rotate(old, "agent", "10.0.0.2")

        assert isinstance(new, RefreshRecord)
        assert new.token != old.token
        assert tokens.find(old.token) is None
        assert tokens.find(new.token) is not None
        assert not tokens.validate(old)

    def test_second_rotate_of_same_record_fails(self, tokens, alice):
        old = tokens.create(alice)
        stale_copy = tokens.find(old.token)
        tokens.rotate(old)

        again = tokens.rotate(stale_copy)

        assert isinstance(again, AuthFailure)
        assert again.kind is FailureKind.TOKEN_INVALID
        assert tokens.count_active(alice) == 1

    def test_rotate_expired_record_fails(self, tokens, alice, date_clock):
        old = tokens.create(alice)
        date_clock.advance(3601)

        result = tokens.rotate(old)

        assert isinstance(result, AuthFailure)
        assert result.kind is FailureKind.TOKEN_INVALID

    def test_concurrent_rotation_has_single_winner(self, tokens, alice):
        old = tokens.create(alice)
        copies = [tokens.find(old.token) for _ in range(10)]
        results = []
        barrier = threading.Barrier(len(copies))

        def rotate(record):
            barrier.wait()
            results.append(tokens.rotate(record))

        threads = [threading.Thread(target=rotate, args=(copy,)) for copy in copies]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results if isinstance(r, RefreshRecord)]
        losers = [r for r in results if isinstance(r, AuthFailure)]
        assert len(winners) == 1
        assert len(losers) == 9
        assert all(loser.kind is FailureKind.TOKEN_INVALID for loser in losers)
        assert tokens.count_active(alice) == 1


class TestPurge:
    """Purging deletes expired records whatever their revoked state."""

    def test_purge_removes_only_expired(self, tokens, store, alice, date_clock):
        expired = tokens.create(alice)
        date_clock.advance(1800)
        live = tokens.create(alice)
        date_clock.advance(1801)

        removed = tokens.purge_expired()

        assert removed == 1
        assert store.get_refresh_record(expired.token) is None
        assert store.get_refresh_record(live.token) is not None

    def test_purge_with_explicit_now(self, tokens, store, alice, date_clock):
        record = tokens.create(alice)

        assert tokens.purge_expired(date_clock.now + timedelta(days=1)) == 1
        assert store.get_refresh_record(record.token) is None
