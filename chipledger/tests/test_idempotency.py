"""
Unit Tests for the Idempotency Cache

Tests cover:
1. Reservation and cached replay
2. Waiting on an in-flight reservation
3. Expiry and eviction
4. One ledger effect per key through the service
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from chipledger.errors import IdempotencyConflictError, InsufficientFundsError
from chipledger.idempotency import IdempotencyCache
from chipledger.models import TransferRequest


class TestReservation:
    """Tests for begin / complete / abandon."""

    def test_first_caller_reserves(self, clock):
        """Test that a new key is reserved for the caller."""
        cache = IdempotencyCache(clock)

        started = cache.begin("key-1", "transfer:a")

        assert started.is_new is True
        assert started.cached_result is None

    def test_completed_key_returns_cached_result(self, clock):
        """Test that a completed key replays the stored result."""
        cache = IdempotencyCache(clock)
        cache.begin("key-1", "transfer:a")
        cache.complete("key-1", {"ok": True})

        started = cache.begin("key-1", "transfer:a")

        assert started.is_new is False
        assert started.cached_result == {"ok": True}

    def test_key_reused_for_different_request(self, clock):
        """Test that a key cannot be reused for a different request."""
        cache = IdempotencyCache(clock)
        cache.begin("key-1", "transfer:a")
        cache.complete("key-1", "done")

        with pytest.raises(IdempotencyConflictError):
            cache.begin("key-1", "transfer:b")

    def test_abandoned_key_can_run_again(self, clock):
        """Test that a failed operation frees its key."""
        cache = IdempotencyCache(clock)
        cache.begin("key-1", "transfer:a")
        cache.abandon("key-1")

        assert cache.begin("key-1", "transfer:a").is_new is True

    def test_run_abandons_on_error(self, clock):
        """Test that run() releases the key when the operation raises."""
        cache = IdempotencyCache(clock)

        def failing():
            raise InsufficientFundsError("no chips")

        with pytest.raises(InsufficientFundsError):
            cache.run("key-1", "op", failing)

        assert cache.run("key-1", "op", lambda: "second try") == "second try"


class TestWaiting:
    """Tests for concurrent duplicates of the same key."""

    def test_waiter_receives_first_result(self, clock):
        """Test that a racing duplicate waits for and returns the first result."""
        cache = IdempotencyCache(clock, wait_timeout=5.0)
        cache.begin("key-1", "op")
        outcome = {}

        def duplicate():
            outcome["started"] = cache.begin("key-1", "op")

        waiter = threading.Thread(target=duplicate)
        waiter.start()
        cache.complete("key-1", "first result")
        waiter.join(timeout=5)

        assert not waiter.is_alive()
        assert outcome["started"].is_new is False
        assert outcome["started"].cached_result == "first result"

    def test_waiter_times_out(self, clock):
        """Test that a waiter gives up with a transient conflict."""
        cache = IdempotencyCache(clock, wait_timeout=0.05)
        cache.begin("key-1", "op")

        with pytest.raises(IdempotencyConflictError):
            cache.begin("key-1", "op")

    def test_run_executes_once_under_contention(self, clock):
        """Test that only one of many concurrent callers runs the operation."""
        cache = IdempotencyCache(clock, wait_timeout=5.0)
        calls = []
        gate = threading.Event()

        def operation():
            calls.append(1)
            gate.wait(0.2)
            return "result"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: cache.run("key-1", "op", operation), range(8)))

        assert len(calls) == 1
        assert results == ["result"] * 8


class TestExpiry:
    """Tests for the retention window."""

    def test_expired_key_is_reusable(self, clock):
        """Test that a key may be reused after the retention window."""
        cache = IdempotencyCache(clock, ttl=timedelta(hours=24))
        cache.begin("key-1", "op")
        cache.complete("key-1", "old")

        clock.advance(hours=24, seconds=1)

        assert cache.begin("key-1", "op").is_new is True

    def test_key_kept_within_window(self, clock):
        """Test that a key is still replayed just before expiry."""
        cache = IdempotencyCache(clock, ttl=timedelta(hours=24))
        cache.begin("key-1", "op")
        cache.complete("key-1", "kept")

        clock.advance(hours=23, minutes=59)

        assert cache.begin("key-1", "op").cached_result == "kept"

    def test_pending_reservation_never_evicted(self, clock):
        """Test that an unresolved reservation survives past the window."""
        cache = IdempotencyCache(clock, ttl=timedelta(hours=1), wait_timeout=0.05)
        cache.begin("key-1", "op")

        clock.advance(hours=48)

        with pytest.raises(IdempotencyConflictError):
            cache.begin("key-1", "op")
        assert len(cache) == 1


class TestServiceIdempotence:
    """Tests for one ledger effect per key through LedgerService."""

    def test_same_key_twice_applies_once(self, service, admin, player):
        """Test that a retried transfer returns the same response and moves chips once."""
        request = TransferRequest(to_account_id=player.user_id, amount=1_000, reason="Promo")

        first = service.submit_transfer(admin, request, idempotency_key="promo-1")
        second = service.submit_transfer(admin, request, idempotency_key="promo-1")

        assert first == second
        assert first.transaction.id == second.transaction.id
        assert service.get_balance(player).balance == 1_500
        assert service.journal.query().total_count == 1

    def test_same_key_concurrently_applies_once(self, service, admin, player):
        """Test that concurrent duplicates produce exactly one ledger effect."""
        request = TransferRequest(to_account_id=player.user_id, amount=250)

        with ThreadPoolExecutor(max_workers=8) as pool:
            responses = list(pool.map(
                lambda _: service.submit_transfer(admin, request, idempotency_key="race-1"), range(8)
            ))

        assert len({r.transaction.id for r in responses}) == 1
        assert service.get_balance(player).balance == 750

    def test_keys_are_scoped_per_caller(self, service, player, other_player):
        """Test that two players using the same key do not collide."""
        first = service.submit_transfer(
            player, TransferRequest(to_account_id=other_player.user_id, amount=10), idempotency_key="k"
        )
        second = service.submit_transfer(
            other_player, TransferRequest(to_account_id=player.user_id, amount=10), idempotency_key="k"
        )

        assert first.transaction.id != second.transaction.id

    def test_different_keys_apply_separately(self, service, admin, player):
        """Test that distinct keys are distinct operations."""
        request = TransferRequest(to_account_id=player.user_id, amount=100)

        service.submit_transfer(admin, request, idempotency_key="a")
        service.submit_transfer(admin, request, idempotency_key="b")

        assert service.get_balance(player).balance == 700
