"""
Escrow ledger queries and debits.

Balances are derived from the append-only allocation stream and cached on
``artist_account``; both are written in the same transaction.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from tip_escrow.storage.models import (
    AllocationRecord,
    ArtistEscrowAccount,
    DebitResult,
    EscrowStats,
    IntegrityReport,
    MediaInfo,
    fingerprint_artist_name,
    utcnow,
)
from tip_escrow.storage.repository import LedgerRepository

from .errors import InsufficientBalance, InvalidAmount
from .locks import KeyedLock
from .money import validate_pence

logger = logging.getLogger(__name__)

MediaLookup = Callable[[str], Optional[MediaInfo]]


@dataclass(frozen=True)
class HistoryEntry:
    """An allocation record with its media metadata resolved."""
    record: AllocationRecord
    media: Optional[MediaInfo]


def select_whole_records(
    pending: Sequence[AllocationRecord],
    amount: Optional[int],
) -> List[AllocationRecord]:
    """Pick pending records, oldest first, whose total does not exceed ``amount``.

    Records are never split. A record that would overshoot is skipped and the
    walk continues with younger records. ``None`` selects every pending record.
    """
    if amount is None:
        return list(pending)

    selected = []
    running = 0
    for record in pending:
        if running + record.amount > amount:
            continue
        selected.append(record)
        running += record.amount
    return selected


class EscrowLedger:
    """Balance queries, history and payout debits for artist escrow."""

    def __init__(
        self,
        repository: LedgerRepository,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
        media_lookup: Optional[MediaLookup] = None,
    ):
        self.repository = repository
        self.locks = locks or KeyedLock()
        self.clock = clock
        self.media_lookup = media_lookup or repository.get_media

    def get_account(self, artist_id: str) -> ArtistEscrowAccount:
        return self.repository.get_account(artist_id)

    def get_balance(self, artist_id: str) -> int:
        """Sum of the artist's pending allocations, in pence."""
        return self.repository.get_account(artist_id).balance

    def get_total_earned(self, artist_id: str) -> int:
        """Everything ever allocated to the artist, pending or claimed."""
        return self.repository.get_account(artist_id).total_escrow_earned

    def debit(self, artist_id: str, amount: Optional[int], payout_request_id: str) -> DebitResult:
        """Claim pending records against a payout in its own transaction.

        See :meth:`debit_in` for semantics.
        """
        with self.locks.hold(artist_id):
            with self.repository.transaction() as conn:
                return self.debit_in(conn, artist_id, amount, payout_request_id)

    def debit_in(
        self,
        conn: sqlite3.Connection,
        artist_id: str,
        amount: Optional[int],
        payout_request_id: str,
    ) -> DebitResult:
        """Claim pending records inside the caller's transaction.

        Whole records are claimed oldest first up to ``amount``; any
        remainder stays pending. ``None`` claims the full balance.

        Args:
            conn: Open ledger transaction
            artist_id: Verified artist id
            amount: Requested pence, or None for the full balance
            payout_request_id: Payout the claim belongs to

        Returns:
            DebitResult describing what was claimed

        Raises:
            InvalidAmount: If amount is not positive, or no whole record fits
            InsufficientBalance: If amount exceeds the pending balance
        """
        if amount is not None:
            validate_pence(amount, "debit amount", allow_zero=False)

        account = self.repository.get_account(artist_id, conn)
        if amount is not None and amount > account.balance:
            raise InsufficientBalance(artist_id, account.balance, amount)

        pending = self.repository.get_pending_for_artist(conn, artist_id)
        selected = select_whole_records(pending, amount)
        debited = sum(record.amount for record in selected)
        if debited == 0:
            raise InvalidAmount(
                f"No whole allocations fit within {amount if amount is not None else account.balance} "
                f"pence for artist {artist_id}"
            )

        self.repository.mark_claimed(conn, selected, self.clock(), payout_request_id)
        self.repository.debit_account(conn, artist_id, debited, account.version)

        logger.info(
            "Debited %d pence (%d record(s)) from artist %s for payout %s",
            debited, len(selected), artist_id, payout_request_id,
        )
        return DebitResult(
            artist_id=artist_id,
            payout_request_id=payout_request_id,
            amount_requested=amount,
            amount_debited=debited,
            claimed_allocation_ids=tuple(record.allocation_id for record in selected),
            balance_after=account.balance - debited,
        )

    def history(self, artist_id: str, limit: int = 50) -> List[HistoryEntry]:
        """Allocation history for an artist, newest first."""
        records = self.repository.get_artist_history(artist_id, limit)
        cache = {}
        entries = []
        for record in records:
            if record.media_id not in cache:
                cache[record.media_id] = self.media_lookup(record.media_id)
            entries.append(HistoryEntry(record=record, media=cache[record.media_id]))
        return entries

    def unclaimed_pool(
        self,
        artist_name: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> List[AllocationRecord]:
        """Unclaimed-pool records, optionally narrowed to a name or channel."""
        fingerprint = fingerprint_artist_name(artist_name) if artist_name else None
        return self.repository.find_unclaimed(fingerprint or None, channel_id)

    def unclaimed_totals(self) -> List[Tuple[str, str, int, int]]:
        return self.repository.unclaimed_totals()

    def stats(self) -> EscrowStats:
        return self.repository.get_stats()

    def reconcile_accounts(self) -> List[str]:
        """Artist ids whose cached balance or total drifted from the record stream."""
        drifted = []
        for account in self.repository.list_accounts():
            pending, total = self.repository.sum_allocations(account.artist_id)
            if (pending, total) != (account.balance, account.total_escrow_earned):
                drifted.append(account.artist_id)
        return drifted

    def verify_integrity(self) -> IntegrityReport:
        """Check record hashes and reconcile cached balances with the stream."""
        tampered_allocations = [
            record.allocation_id
            for record in self.repository.iter_allocations()
            if record.compute_hash() != record.transaction_hash
        ]
        tampered_payouts = [
            request.request_id
            for request in self.repository.iter_payout_requests()
            if request.compute_hash() != request.transaction_hash
        ]
        drifted_accounts = self.reconcile_accounts()

        report = IntegrityReport(
            tampered_allocations=tampered_allocations,
            tampered_payouts=tampered_payouts,
            drifted_accounts=drifted_accounts,
        )
        if not report.ok:
            logger.error(
                "Ledger integrity check failed: %d allocation(s), %d payout(s), %d account(s)",
                len(tampered_allocations), len(tampered_payouts), len(drifted_accounts),
            )
        return report
