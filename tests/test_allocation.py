"""
Unit tests for tip allocation.

Tests the platform split, per-owner splits, idempotent re-delivery and
unresolved ownership.
"""

from fractions import Fraction

import pytest

from tip_escrow.config.loader import EscrowConfig, RevenueSplitConfig
from tip_escrow.core.allocation import plan_allocations, split_revenue
from tip_escrow.core.errors import InvalidAmount
from tip_escrow.core.ownership import ResolvedOwnership
from tip_escrow.storage.models import (
    AllocationStatus,
    MediaInfo,
    UnverifiedArtist,
    VerifiedArtist,
)

from conftest import T0, make_tip

ALICE = VerifiedArtist("alice")
BOB = VerifiedArtist("bob")


class TestSplitRevenue:
    """Test the platform/artist split."""

    def test_seventy_thirty(self):
        split = split_revenue(1000)
        assert (split.artist_pool, split.platform_fee) == (700, 300)

    def test_platform_absorbs_rounding(self):
        split = split_revenue(1001)
        assert (split.artist_pool, split.platform_fee) == (700, 301)

    def test_one_penny_tip(self):
        split = split_revenue(1)
        assert (split.artist_pool, split.platform_fee) == (0, 1)

    def test_custom_percent(self):
        split = split_revenue(999, artist_share_percent=80)
        assert split.artist_pool + split.platform_fee == 999
        assert split.artist_pool == 799

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_rejected(self, amount):
        with pytest.raises(InvalidAmount):
            split_revenue(amount)


class TestPlanAllocations:
    """Test record planning without storage."""

    def test_one_record_per_owner_even_when_zero(self):
        ownership = ResolvedOwnership(
            media=MediaInfo("media-1"),
            shares=[(ALICE, Fraction(1, 2)), (BOB, Fraction(1, 2))],
        )
        records = plan_allocations(make_tip("t1", "media-1", 1), 1, ownership, T0)

        assert [r.amount for r in records] == [1, 0]
        assert [r.owner_ref for r in records] == [ALICE, BOB]
        assert all(r.transaction_hash == r.compute_hash() for r in records)

    def test_unresolved_goes_to_pool(self):
        ownership = ResolvedOwnership(media=MediaInfo("media-1", artist_name="New Band"), shares=[])
        records = plan_allocations(make_tip("t1", "media-1", 1000), 700, ownership, T0)

        assert len(records) == 1
        assert records[0].owner_ref == UnverifiedArtist.from_name("New Band")
        assert records[0].amount == 700
        assert records[0].share == 1


class TestAllocationEngine:
    """Test allocation through the service."""

    def test_two_owner_split(self, service):
        service.register_media("media-1", "Alice & Bob", [(ALICE, Fraction(3, 5)), (BOB, Fraction(2, 5))])

        result = service.allocate(make_tip("tip-1", "media-1", 1000))

        assert not result.duplicate
        assert not result.unresolved
        assert result.platform_fee == 300
        assert result.artist_pool == 700
        assert {r.owner_ref.artist_id: r.amount for r in result.records} == {"alice": 420, "bob": 280}
        assert all(r.status == AllocationStatus.PENDING for r in result.records)

        assert service.ledger.get_balance("alice") == 420
        assert service.ledger.get_balance("bob") == 280
        assert service.ledger.get_total_earned("alice") == 420

    def test_conservation(self, service):
        service.register_media("media-1", "Trio", [(VerifiedArtist(a), 1) for a in ("a", "b", "c")])

        result = service.allocate(make_tip("tip-1", "media-1", 1234))

        assert result.total_allocated + result.platform_fee == 1234
        assert result.total_allocated == result.artist_pool

    def test_redelivery_is_noop(self, service):
        service.register_media("media-1", "Alice", [(ALICE, 1)])
        first = service.allocate(make_tip("tip-1", "media-1", 1000))

        second = service.allocate(make_tip("tip-1", "media-1", 1000))

        assert second.duplicate
        assert [r.allocation_id for r in second.records] == [r.allocation_id for r in first.records]
        assert (second.artist_pool, second.platform_fee) == (700, 300)
        assert service.ledger.get_balance("alice") == 700
        assert service.stats().platform_fee_total == 300

    def test_unresolved_media_held_unclaimed(self, service, caplog):
        result = service.allocate(make_tip("tip-1", "never-registered", 1000))

        assert result.unresolved
        assert len(result.records) == 1
        record = result.records[0]
        assert record.is_unclaimed_pool
        assert record.amount == 700
        assert "never-registered" in caplog.text

        stats = service.stats()
        assert stats.unclaimed_total == 700
        assert stats.unclaimed_count == 1
        assert stats.pending_verified_total == 0

    def test_media_with_unverified_owner(self, service):
        service.register_media(
            "media-1", "Alice feat. Newcomer",
            [(ALICE, "0.5"), (UnverifiedArtist.from_name("Newcomer"), "0.5")],
        )

        result = service.allocate(make_tip("tip-1", "media-1", 1000))

        assert not result.unresolved
        assert service.ledger.get_balance("alice") == 350
        assert [r.amount for r in service.ledger.unclaimed_pool("newcomer")] == [350]

    def test_custom_revenue_split(self, make_service):
        service = make_service(EscrowConfig(revenue_split=RevenueSplitConfig(artist_share_percent=80)))
        service.register_media("media-1", "Alice", [(ALICE, 1)])

        result = service.allocate(make_tip("tip-1", "media-1", 1000))

        assert (result.artist_pool, result.platform_fee) == (800, 200)

    def test_invalid_tip_rejected_without_writes(self, service):
        with pytest.raises(InvalidAmount):
            service.allocate(make_tip("tip-1", "media-1", 0))
        with pytest.raises(ValueError, match="tip_id"):
            service.allocate(make_tip("", "media-1", 100))

        assert service.allocation.repository.get_tip_event("tip-1") is None
