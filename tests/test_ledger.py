"""
Unit tests for the escrow ledger.

Tests whole-record debits, history, the unclaimed pool and integrity checks.
"""

from fractions import Fraction

import pytest

from tip_escrow.core.errors import InsufficientBalance, InvalidAmount
from tip_escrow.core.ledger import select_whole_records
from tip_escrow.storage.db import get_connection
from tip_escrow.storage.models import (
    AllocationRecord,
    AllocationStatus,
    UnverifiedArtist,
    VerifiedArtist,
)

from conftest import T0, make_tip

ALICE = VerifiedArtist("alice")


def _record(allocation_id: str, amount: int) -> AllocationRecord:
    return AllocationRecord(
        allocation_id=allocation_id,
        tip_id="t",
        media_id="m",
        owner_ref=ALICE,
        share=Fraction(1),
        amount=amount,
        allocated_at=T0,
    )


class TestSelectWholeRecords:
    """Test oldest-first whole record selection."""

    def test_none_selects_everything(self):
        pending = [_record("a", 700), _record("b", 350)]
        assert select_whole_records(pending, None) == pending

    def test_skips_record_that_overshoots(self):
        pending = [_record("a", 700), _record("b", 350), _record("c", 140)]
        selected = select_whole_records(pending, 1000)
        assert [r.allocation_id for r in selected] == ["a", "c"]

    def test_large_oldest_record_skipped(self):
        pending = [_record("a", 3500)] + [_record(f"s{i}", 100) for i in range(5)]
        selected = select_whole_records(pending, 300)
        assert [r.allocation_id for r in selected] == ["s0", "s1", "s2"]

    def test_exact_fit(self):
        pending = [_record("a", 700), _record("b", 350)]
        assert [r.allocation_id for r in select_whole_records(pending, 1050)] == ["a", "b"]

    def test_nothing_fits(self):
        assert select_whole_records([_record("a", 700)], 500) == []


class TestEscrowLedger:
    """Test ledger operations through the service."""

    @pytest.fixture(autouse=True)
    def _seed(self, service):
        self.service = service
        self.ledger = service.ledger
        service.register_media("solo", "Alice", [(ALICE, 1)], title="Solo Song")
        service.allocate(make_tip("tip-1", "solo", 1000))  # 700
        service.allocate(make_tip("tip-2", "solo", 500))   # 350
        service.allocate(make_tip("tip-3", "solo", 200))   # 140

    def test_balance_and_total(self):
        assert self.ledger.get_balance("alice") == 1190
        assert self.ledger.get_total_earned("alice") == 1190

    def test_debit_claims_oldest_whole_records(self):
        result = self.ledger.debit("alice", 1000, "payout-1")

        assert result.amount_debited == 840
        assert result.balance_after == 350
        assert len(result.claimed_allocation_ids) == 2
        assert self.ledger.get_balance("alice") == 350
        # Total earned never decreases
        assert self.ledger.get_total_earned("alice") == 1190

        history = self.ledger.history("alice")
        statuses = {entry.record.allocation_id: entry.record.status for entry in history}
        assert all(statuses[a] == AllocationStatus.CLAIMED for a in result.claimed_allocation_ids)
        assert list(statuses.values()).count(AllocationStatus.PENDING) == 1

    def test_debit_full_balance(self):
        result = self.ledger.debit("alice", None, "payout-1")

        assert result.amount_debited == 1190
        assert self.ledger.get_balance("alice") == 0

    def test_debit_more_than_balance(self):
        with pytest.raises(InsufficientBalance) as excinfo:
            self.ledger.debit("alice", 2000, "payout-1")

        assert excinfo.value.balance == 1190
        assert self.ledger.get_balance("alice") == 1190

    def test_debit_where_no_record_fits(self):
        with pytest.raises(InvalidAmount, match="No whole allocations"):
            self.ledger.debit("alice", 100, "payout-1")
        assert self.ledger.get_balance("alice") == 1190

    def test_debit_rejects_zero(self):
        with pytest.raises(InvalidAmount):
            self.ledger.debit("alice", 0, "payout-1")

    def test_history_newest_first_with_media(self):
        history = self.ledger.history("alice")

        assert [entry.record.tip_id for entry in history] == ["tip-3", "tip-2", "tip-1"]
        assert all(entry.media.title == "Solo Song" for entry in history)

    def test_history_limit(self):
        assert len(self.ledger.history("alice", limit=2)) == 2

    def test_unknown_artist_is_empty(self):
        assert self.ledger.get_balance("nobody") == 0
        assert self.ledger.history("nobody") == []

    def test_unclaimed_pool_by_name(self):
        self.service.register_media("band", "The Band", [])
        self.service.allocate(make_tip("tip-4", "band", 1000))

        pool = self.ledger.unclaimed_pool("THE BAND!")

        assert [r.amount for r in pool] == [700]
        assert pool[0].owner_ref == UnverifiedArtist.from_name("The Band")
        assert self.ledger.unclaimed_totals() == [("the band", "The Band", 1, 700)]


class TestIntegrity:
    """Test tamper detection and balance reconciliation."""

    def test_clean_ledger_verifies(self, service):
        service.register_media("solo", "Alice", [(ALICE, 1)])
        service.allocate(make_tip("tip-1", "solo", 1000))
        service.ledger.debit("alice", None, "payout-1")

        report = service.audit()

        assert report.ok

    def test_edited_amount_is_detected(self, service, db_path):
        service.register_media("solo", "Alice", [(ALICE, 1)])
        result = service.allocate(make_tip("tip-1", "solo", 1000))

        conn = get_connection(db_path)
        try:
            conn.execute(
                "UPDATE allocation_record SET amount = 9999 WHERE allocation_id = ?",
                (result.records[0].allocation_id,),
            )
        finally:
            conn.close()

        report = service.audit()

        assert not report.ok
        assert report.tampered_allocations == [result.records[0].allocation_id]
        assert report.drifted_accounts == ["alice"]

    def test_edited_balance_is_detected(self, service, db_path):
        service.register_media("solo", "Alice", [(ALICE, 1)])
        service.allocate(make_tip("tip-1", "solo", 1000))

        conn = get_connection(db_path)
        try:
            conn.execute("UPDATE artist_account SET balance = 10 WHERE artist_id = 'alice'")
        finally:
            conn.close()

        report = service.audit()

        assert report.tampered_allocations == []
        assert report.drifted_accounts == ["alice"]

    def test_reconcile_accounts(self, service, db_path):
        service.register_media("solo", "Alice", [(ALICE, 1)])
        service.allocate(make_tip("tip-1", "solo", 1000))
        assert service.ledger.reconcile_accounts() == []

        conn = get_connection(db_path)
        try:
            conn.execute("UPDATE artist_account SET total_escrow_earned = 1 WHERE artist_id = 'alice'")
        finally:
            conn.close()

        assert service.ledger.reconcile_accounts() == ["alice"]
