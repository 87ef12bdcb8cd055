"""
Escrow service facade.

Wires storage, ownership, allocation, matching and payouts together behind
the operations callers use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..config.loader import EscrowConfig, default_escrow_config
from ..core.allocation import AllocationEngine, AllocationResult
from ..core.eligibility import EligibilityResult, PayoutEligibilityEngine
from ..core.ledger import EscrowLedger, HistoryEntry
from ..core.locks import KeyedLock
from ..core.matching import MatchingService, MatchResult
from ..core.ownership import OwnershipResolver, ResolvedOwnership, ShareInput
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import (
    AllocationRecord,
    EscrowStats,
    IntegrityReport,
    OwnerRef,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    TipEvent,
    utcnow,
)
from ..storage.repository import LedgerRepository


@dataclass(frozen=True)
class EscrowInfo:
    """Everything the artist escrow dashboard shows."""
    artist_id: str
    balance: int
    total_escrow_earned: int
    last_payout_total_earned: int
    history: List[HistoryEntry]
    unclaimed_candidates: List[AllocationRecord]
    eligibility: EligibilityResult


class EscrowService:
    """Entry point for the artist tip escrow ledger.

    All amounts are integer pence. One instance shares a single lock
    registry, so concurrent calls for the same artist are serialised.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        config: Optional[EscrowConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        initialize: bool = True,
    ):
        """Initialize the service.

        Args:
            db_path: SQLite database file
            config: Escrow policy (defaults to the standard policy)
            clock: Source of timestamps
            initialize: Create tables if missing
        """
        self.config = config or default_escrow_config()
        self.repository = LedgerRepository(db_path)
        if initialize:
            self.repository.initialize()

        self.locks = KeyedLock()
        self.resolver = OwnershipResolver(self.repository, self.config.ownership)
        self.ledger = EscrowLedger(self.repository, locks=self.locks, clock=clock)
        self.allocation = AllocationEngine(
            self.repository, self.resolver, self.config, locks=self.locks, clock=clock
        )
        self.matching = MatchingService(self.repository, locks=self.locks, clock=clock)
        self.payouts = PayoutEligibilityEngine(
            self.repository, self.ledger, self.config.payout, locks=self.locks, clock=clock
        )

    @property
    def db_path(self) -> str:
        return self.repository.db_path

    def register_media(
        self,
        media_id: str,
        artist_name: str,
        owners: Sequence[Tuple[OwnerRef, ShareInput]],
        title: str = "",
        channel_id: Optional[str] = None,
        featured_artists: Sequence[str] = (),
    ) -> ResolvedOwnership:
        return self.resolver.register_media(
            media_id, artist_name, owners, title, channel_id, featured_artists
        )

    def allocate(self, tip: TipEvent) -> AllocationResult:
        return self.allocation.allocate(tip)

    def get_escrow_info(
        self,
        artist_id: str,
        artist_name: Optional[str] = None,
        channel_id: Optional[str] = None,
        history_limit: int = 50,
    ) -> EscrowInfo:
        """Balance, totals, history and claimable pool records for an artist.

        ``unclaimed_candidates`` is populated only when a name or channel id
        is supplied by the identity service.
        """
        account = self.ledger.get_account(artist_id)
        return EscrowInfo(
            artist_id=artist_id,
            balance=account.balance,
            total_escrow_earned=account.total_escrow_earned,
            last_payout_total_earned=account.last_payout_total_earned,
            history=self.ledger.history(artist_id, history_limit),
            unclaimed_candidates=self.matching.find_candidates(artist_name, channel_id),
            eligibility=self.payouts.check_eligibility(artist_id),
        )

    def match(self, artist_id: str, artist_name: str, channel_id: Optional[str] = None) -> MatchResult:
        return self.matching.match_unclaimed(artist_id, artist_name, channel_id)

    def check_eligibility(self, artist_id: str, amount: Optional[int] = None) -> EligibilityResult:
        return self.payouts.check_eligibility(artist_id, amount)

    def request_payout(
        self,
        artist_id: str,
        amount: Optional[int] = None,
        method: Union[PayoutMethod, str] = PayoutMethod.BANK_TRANSFER,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> PayoutRequest:
        return self.payouts.request_payout(artist_id, amount, method, details, request_id)

    def process_payout(self, request_id: str, notes: Optional[str] = None) -> PayoutRequest:
        return self.payouts.process_payout(request_id, notes)

    def reject_payout(self, request_id: str, notes: Optional[str] = None) -> PayoutRequest:
        return self.payouts.reject_payout(request_id, notes)

    def list_payout_requests(
        self,
        artist_id: Optional[str] = None,
        status: Optional[Union[PayoutStatus, str]] = None,
        limit: int = 100,
    ) -> List[PayoutRequest]:
        return self.payouts.list_payout_requests(artist_id, status, limit)

    def stats(self) -> EscrowStats:
        return self.ledger.stats()

    def unclaimed_totals(self) -> List[Tuple[str, str, int, int]]:
        return self.ledger.unclaimed_totals()

    def audit(self) -> IntegrityReport:
        return self.ledger.verify_integrity()
