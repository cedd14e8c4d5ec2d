"""
Unit Tests for the Daily Mint

Tests cover:
1. Player claim and the 24 hour window
2. Server-derived claim status
3. Admin batch mint report
4. Concurrent claims
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from chipledger.errors import AlreadyClaimedError, InvalidStateError, UnauthorizedError
from chipledger.models import Role, TransactionStatus, TransactionType


class TestPlayerClaim:
    """Tests for a player claiming daily chips."""

    def test_claim_credits_fixed_amount(self, service, player):
        """Test that a claim mints 10,000 chips as an approved daily-mint."""
        response = service.claim_daily_mint(player)

        tx = response.transaction
        assert tx.type == TransactionType.DAILY_MINT
        assert tx.status == TransactionStatus.APPROVED
        assert tx.from_account_id is None
        assert tx.amount == 10_000
        assert service.get_balance(player).balance == 10_500

    def test_second_claim_within_window(self, service, player, clock):
        """Test that claiming again a second later fails with the wait time."""
        service.claim_daily_mint(player)
        clock.advance(seconds=1)

        with pytest.raises(AlreadyClaimedError) as exc_info:
            service.claim_daily_mint(player)

        assert exc_info.value.remaining == timedelta(hours=24) - timedelta(seconds=1)
        assert exc_info.value.context["remaining_seconds"] == 24 * 3600 - 1
        assert service.get_balance(player).balance == 10_500

    def test_claim_after_window(self, service, player, clock):
        """Test that a claim succeeds once 24 hours have elapsed."""
        service.claim_daily_mint(player)
        clock.advance(seconds=1)
        with pytest.raises(AlreadyClaimedError):
            service.claim_daily_mint(player)

        clock.advance(hours=23, minutes=59, seconds=59)
        service.claim_daily_mint(player)

        assert service.get_balance(player).balance == 20_500

    def test_failed_claim_leaves_window(self, service, player, clock):
        """Test that a rejected claim does not move the window."""
        service.claim_daily_mint(player)
        first_claim = service.daily_mint.get_window(player.user_id).last_claimed_at
        clock.advance(hours=5)

        with pytest.raises(AlreadyClaimedError):
            service.claim_daily_mint(player)

        assert service.daily_mint.get_window(player.user_id).last_claimed_at == first_claim

    def test_banned_cannot_claim(self, service, admin, player):
        """Test that banned accounts cannot claim."""
        service.ban_account(admin, player.user_id, reason="Bot")

        with pytest.raises(InvalidStateError):
            service.claim_daily_mint(player)

        assert service.daily_mint.get_window(player.user_id).last_claimed_at is None

    def test_admin_account_cannot_claim(self, service, admin):
        """Test that admin accounts are not eligible for daily chips."""
        with pytest.raises(InvalidStateError):
            service.claim_daily_mint(admin)

        assert service.get_balance(admin).balance == 0
        assert service.daily_mint.get_window(admin.user_id).last_claimed_at is None
        assert service.journal.query().total_count == 0

    def test_admin_can_claim_for_a_player(self, service, admin, player):
        """Test that an admin claiming on a player's behalf credits the player."""
        service.daily_mint.claim_daily_mint(admin, player.user_id)

        assert service.get_balance(player).balance == 10_500
        assert service.get_balance(admin).balance == 0

    def test_cannot_claim_for_someone_else(self, service, player, other_player):
        """Test that a player only claims for their own account."""
        with pytest.raises(UnauthorizedError):
            service.daily_mint.claim_daily_mint(player, other_player.user_id)

    def test_concurrent_claims_credit_once(self, service, player):
        """Test that racing claims produce exactly one credit."""
        def claim(_):
            try:
                service.claim_daily_mint(player)
                return True
            except AlreadyClaimedError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(claim, range(16)))

        assert outcomes.count(True) == 1
        assert service.get_balance(player).balance == 10_500


class TestClaimStatus:
    """Tests for the server-derived countdown."""

    def test_status_before_first_claim(self, service, player):
        """Test that a fresh account can claim immediately."""
        status = service.daily_mint_status(player)

        assert status.can_claim is True
        assert status.remaining_seconds == 0
        assert status.last_claimed_at is None
        assert status.amount == 10_000

    def test_status_after_claim(self, service, player, clock):
        """Test the remaining time reported after a claim."""
        service.claim_daily_mint(player)
        clock.advance(hours=2)

        status = service.daily_mint_status(player)

        assert status.can_claim is False
        assert status.remaining_seconds == 22 * 3600
        assert status.next_claim_at == status.last_claimed_at + timedelta(hours=24)

    def test_status_of_another_player(self, service, player, other_player):
        """Test that players cannot read each other's status."""
        with pytest.raises(UnauthorizedError):
            service.daily_mint_status(player, other_player.user_id)


class TestBatchMint:
    """Tests for the admin-triggered mint for all eligible players."""

    def test_credits_every_eligible_player(self, service, admin, player, other_player):
        """Test that every active player gets the amount and admins are excluded."""
        report = service.mint_for_all_eligible(admin, 1_000)

        assert {c.account_id for c in report.credited} == {player.user_id, other_player.user_id}
        assert report.skipped == []
        assert report.total_minted == 2_000
        assert service.get_balance(player).balance == 1_500
        assert service.get_balance(admin).balance == 0

    def test_skips_are_reported(self, service, admin, player, other_player, storage):
        """Test that cooldown and banned accounts are skipped without aborting."""
        banned = storage.create_account("Cheater", Role.PLAYER, balance=10)
        service.ban_account(admin, banned.id, reason="Cheating")
        service.claim_daily_mint(player)

        report = service.mint_for_all_eligible(admin, 1_000)

        assert [c.account_id for c in report.credited] == [other_player.user_id]
        skipped = {s.account_id: s.code for s in report.skipped}
        assert skipped == {player.user_id: "already_claimed", banned.id: "invalid_state"}
        assert service.get_balance(other_player).balance == 1_100

    def test_batch_shares_the_window(self, service, admin, player, clock):
        """Test that a batch credit starts the same 24 hour window."""
        service.mint_for_all_eligible(admin, 1_000)
        clock.advance(hours=1)

        with pytest.raises(AlreadyClaimedError):
            service.claim_daily_mint(player)

    def test_batch_is_admin_only(self, service, player):
        """Test that players cannot run the batch mint."""
        with pytest.raises(UnauthorizedError):
            service.mint_for_all_eligible(player, 1_000)

    def test_batch_replayed_with_key(self, service, admin, player, clock):
        """Test that a retried batch returns the same report."""
        first = service.mint_for_all_eligible(admin, 500, idempotency_key="mint-day-1")
        clock.advance(hours=1)
        second = service.mint_for_all_eligible(admin, 500, idempotency_key="mint-day-1")

        assert first == second
        assert service.get_balance(player).balance == 1_000
