"""
Tip allocation into artist escrow.

Every confirmed tip is split between the platform and the artist pool, and
the artist pool is split across the media's owners. The split conserves
money exactly: the per-owner amounts plus the platform fee always equal the
tip amount.

Allocation Order:
1. Platform/artist split - artist pool rounded down, platform absorbs the rest
2. Ownership split - largest remainder method across resolved owners
3. Posting - tip, records and artist credits written in one transaction
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN
from fractions import Fraction
from typing import Callable, List, Optional

from tip_escrow.config.loader import EscrowConfig, default_escrow_config
from tip_escrow.storage.models import (
    AllocationRecord,
    TipEvent,
    VerifiedArtist,
    utcnow,
)
from tip_escrow.storage.repository import LedgerRepository

from .errors import DuplicateTip
from .locks import KeyedLock
from .money import multiply_by_fraction, split_shares, subtract, validate_pence
from .ownership import OwnershipResolver, ResolvedOwnership

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevenueSplit:
    """Platform/artist split of a single tip."""
    amount: int
    artist_pool: int
    platform_fee: int


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of allocating one tip."""
    tip_id: str
    artist_pool: int
    platform_fee: int
    records: List[AllocationRecord] = field(default_factory=list)
    duplicate: bool = False
    unresolved: bool = False

    @property
    def total_allocated(self) -> int:
        return sum(record.amount for record in self.records)


def split_revenue(amount: int, artist_share_percent: int = 70) -> RevenueSplit:
    """Split a tip into the artist pool and the platform fee.

    The artist pool is rounded down; the platform fee is whatever remains, so
    ``artist_pool + platform_fee == amount`` always holds.

    Raises:
        InvalidAmount: If amount is not a positive integer
    """
    validate_pence(amount, "tip amount", allow_zero=False)
    artist_pool = multiply_by_fraction(amount, artist_share_percent, 100, rounding=ROUND_DOWN)
    platform_fee = subtract(amount, artist_pool)
    return RevenueSplit(amount=amount, artist_pool=artist_pool, platform_fee=platform_fee)


def plan_allocations(
    tip: TipEvent,
    artist_pool: int,
    ownership: ResolvedOwnership,
    allocated_at: datetime,
    id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
) -> List[AllocationRecord]:
    """Build the allocation records for a tip without touching storage.

    With no resolved owners the whole pool becomes a single unclaimed record
    keyed by the media's artist name.
    """
    if ownership.unresolved:
        owners = [ownership.unresolved_owner]
        shares = [Fraction(1)]
        amounts = [artist_pool]
    else:
        owners = [owner for owner, _ in ownership.shares]
        shares = [share for _, share in ownership.shares]
        amounts = split_shares(artist_pool, shares)

    return [
        AllocationRecord(
            allocation_id=id_factory(),
            tip_id=tip.tip_id,
            media_id=tip.media_id,
            owner_ref=owner,
            share=share,
            amount=amount,
            allocated_at=allocated_at,
        ).with_hash()
        for owner, share, amount in zip(owners, shares, amounts)
    ]


def validate_tip(tip: TipEvent) -> None:
    """Reject tips that can never be allocated."""
    for name in ("tip_id", "media_id", "bidder_id"):
        value = getattr(tip, name)
        if not value or not str(value).strip():
            raise ValueError(f"{name} is required and cannot be empty")
    validate_pence(tip.amount, "tip amount", allow_zero=False)


class AllocationEngine:
    """Allocates confirmed tips into the escrow ledger, at most once per tip."""

    def __init__(
        self,
        repository: LedgerRepository,
        resolver: OwnershipResolver,
        config: Optional[EscrowConfig] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.resolver = resolver
        self.config = config or default_escrow_config()
        self.locks = locks or KeyedLock()
        self.clock = clock

    def allocate(self, tip: TipEvent) -> AllocationResult:
        """Allocate a tip to its owners.

        Re-delivery of a known tip id is a no-op that returns the stored
        allocation with ``duplicate=True``.

        Args:
            tip: Confirmed tip event

        Returns:
            AllocationResult with one record per owner

        Raises:
            InvalidAmount: If the tip amount is not a positive integer
            ValueError: If required identifiers are missing
            LedgerUnavailable: On transient storage failure; safe to retry
        """
        validate_tip(tip)

        existing = self._existing_result(tip.tip_id)
        if existing is not None:
            logger.warning("Tip %s already allocated, ignoring re-delivery", tip.tip_id)
            return existing

        split = split_revenue(tip.amount, self.config.revenue_split.artist_share_percent)
        ownership = self.resolver.resolve(tip.media_id)
        now = self.clock()
        records = plan_allocations(tip, split.artist_pool, ownership, now)

        artist_ids = [
            record.owner_ref.artist_id
            for record in records
            if isinstance(record.owner_ref, VerifiedArtist)
        ]

        try:
            with self.locks.hold(*artist_ids):
                with self.repository.transaction() as conn:
                    self.repository.insert_tip_event(
                        conn, tip, split.artist_pool, split.platform_fee, now
                    )
                    for record in records:
                        self.repository.insert_allocation(conn, record)
                        if isinstance(record.owner_ref, VerifiedArtist):
                            self.repository.credit_account(
                                conn, record.owner_ref.artist_id, record.amount
                            )
        except DuplicateTip:
            # Lost a race with a concurrent delivery of the same tip
            logger.warning("Tip %s allocated concurrently, ignoring re-delivery", tip.tip_id)
            existing = self._existing_result(tip.tip_id)
            if existing is None:
                raise
            return existing

        if ownership.unresolved:
            logger.warning(
                "No owners for media %s; tip %s pool of %d pence held unclaimed for %r",
                tip.media_id, tip.tip_id, split.artist_pool, ownership.media.artist_name,
            )
        logger.info(
            "Allocated tip %s: %d pence to %d owner(s), platform fee %d pence",
            tip.tip_id, split.artist_pool, len(records), split.platform_fee,
        )

        return AllocationResult(
            tip_id=tip.tip_id,
            artist_pool=split.artist_pool,
            platform_fee=split.platform_fee,
            records=records,
            unresolved=ownership.unresolved,
        )

    def _existing_result(self, tip_id: str) -> Optional[AllocationResult]:
        stored = self.repository.get_tip_event(tip_id)
        if stored is None:
            return None
        _, artist_pool, platform_fee = stored
        records = self.repository.get_allocations_for_tip(tip_id)
        return AllocationResult(
            tip_id=tip_id,
            artist_pool=artist_pool,
            platform_fee=platform_fee,
            records=records,
            duplicate=True,
        )
