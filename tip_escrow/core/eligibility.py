"""
Payout eligibility and payout processing.

Eligibility is evaluated from the live ledger on every call; nothing is
cached between requests.

Check Order:
1. Earnings threshold - first payout needs the cumulative threshold, later
   payouts need the incremental threshold since the last payout
2. Balance - a requested amount cannot exceed the pending balance
3. Minimum payout - the amount paid out must reach the minimum
4. Whole records - the whole allocations that fit within a requested amount
   must themselves reach the minimum, since records are never split
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from tip_escrow.config.loader import PayoutThresholds
from tip_escrow.storage.models import (
    ArtistEscrowAccount,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    utcnow,
)
from tip_escrow.storage.repository import LedgerRepository

from .errors import InsufficientBalance, InvalidAmount, InvalidPayoutState, NotEligible
from .ledger import EscrowLedger, select_whole_records
from .locks import KeyedLock
from .money import validate_pence

logger = logging.getLogger(__name__)


class EligibilityReason(Enum):
    """Why an artist is or is not eligible, in check order."""
    ELIGIBLE = "eligible"
    FIRST_PAYOUT_THRESHOLD = "first_payout_threshold"
    SUBSEQUENT_PAYOUT_THRESHOLD = "subsequent_payout_threshold"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    BELOW_MINIMUM_PAYOUT = "below_minimum_payout"
    NO_WHOLE_RECORDS_FIT = "no_whole_records_fit"


@dataclass(frozen=True)
class EligibilityResult:
    """Eligibility snapshot for one artist."""
    artist_id: str
    eligible: bool
    reason: EligibilityReason
    message: str
    remaining_to_eligible: int
    balance: int
    total_escrow_earned: int
    last_payout_total_earned: int
    first_payout: bool


def evaluate_eligibility(
    account: ArtistEscrowAccount,
    thresholds: PayoutThresholds,
    amount: Optional[int] = None,
    claimable: Optional[int] = None,
) -> EligibilityResult:
    """Evaluate payout eligibility for an account.

    Args:
        account: Current account state
        thresholds: Payout policy thresholds
        amount: Requested amount in pence, or None for the full balance
        claimable: Pence of whole pending records that fit within ``amount``
            (see :func:`select_whole_records`); skipped when None

    Returns:
        EligibilityResult; ``remaining_to_eligible`` is the pence still
        missing for the first failing check, 0 when eligible
    """
    first_payout = account.payouts_completed == 0

    def result(reason: EligibilityReason, message: str, remaining: int = 0) -> EligibilityResult:
        return EligibilityResult(
            artist_id=account.artist_id,
            eligible=reason == EligibilityReason.ELIGIBLE,
            reason=reason,
            message=message,
            remaining_to_eligible=remaining,
            balance=account.balance,
            total_escrow_earned=account.total_escrow_earned,
            last_payout_total_earned=account.last_payout_total_earned,
            first_payout=first_payout,
        )

    # 1. Earnings threshold
    if first_payout:
        remaining = max(0, thresholds.first_payout_pence - account.total_escrow_earned)
        if remaining > 0:
            return result(
                EligibilityReason.FIRST_PAYOUT_THRESHOLD,
                f"First payout requires {thresholds.first_payout_pence} pence earned in total; "
                f"{remaining} pence to go",
                remaining,
            )
    else:
        remaining = max(0, thresholds.subsequent_payout_pence - account.earned_since_last_payout)
        if remaining > 0:
            return result(
                EligibilityReason.SUBSEQUENT_PAYOUT_THRESHOLD,
                f"Next payout requires {thresholds.subsequent_payout_pence} pence earned since "
                f"the last payout; {remaining} pence to go",
                remaining,
            )

    # 2. Balance
    if amount is not None and amount > account.balance:
        return result(
            EligibilityReason.INSUFFICIENT_BALANCE,
            f"Requested {amount} pence exceeds available balance of {account.balance} pence",
            amount - account.balance,
        )

    # 3. Minimum payout
    available = account.balance if amount is None else amount
    if available < thresholds.minimum_payout_pence:
        return result(
            EligibilityReason.BELOW_MINIMUM_PAYOUT,
            f"Minimum payout is {thresholds.minimum_payout_pence} pence",
            thresholds.minimum_payout_pence - available,
        )

    # 4. Whole records
    if claimable is not None and claimable < thresholds.minimum_payout_pence:
        return result(
            EligibilityReason.NO_WHOLE_RECORDS_FIT,
            f"Only {claimable} pence of whole allocations fit within the requested amount; "
            f"minimum payout is {thresholds.minimum_payout_pence} pence",
            thresholds.minimum_payout_pence - claimable,
        )

    return result(EligibilityReason.ELIGIBLE, "Eligible for payout")


class PayoutEligibilityEngine:
    """Gates payout requests and applies processed payouts to the ledger."""

    def __init__(
        self,
        repository: LedgerRepository,
        ledger: EscrowLedger,
        thresholds: Optional[PayoutThresholds] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.ledger = ledger
        self.thresholds = thresholds or PayoutThresholds()
        self.locks = locks or ledger.locks
        self.clock = clock

    def check_eligibility(self, artist_id: str, amount: Optional[int] = None) -> EligibilityResult:
        """Evaluate eligibility against the current ledger state."""
        if amount is not None:
            validate_pence(amount, "payout amount", allow_zero=False)
        account = self.repository.get_account(artist_id)
        return self._evaluate(account, amount)

    def _evaluate(
        self,
        account: ArtistEscrowAccount,
        amount: Optional[int],
        conn=None,
    ) -> EligibilityResult:
        claimable = None
        if amount is not None:
            pending = self.repository.get_pending_for_artist(conn, account.artist_id)
            claimable = sum(record.amount for record in select_whole_records(pending, amount))
        return evaluate_eligibility(account, self.thresholds, amount, claimable)

    def _enforce(self, account: ArtistEscrowAccount, amount: Optional[int], conn) -> EligibilityResult:
        result = self._evaluate(account, amount, conn)
        if result.eligible:
            return result
        if result.reason == EligibilityReason.INSUFFICIENT_BALANCE:
            raise InsufficientBalance(account.artist_id, account.balance, amount)
        if result.reason == EligibilityReason.NO_WHOLE_RECORDS_FIT:
            raise InvalidAmount(result.message)
        raise NotEligible(account.artist_id, result.message, result.remaining_to_eligible)

    def request_payout(
        self,
        artist_id: str,
        amount: Optional[int] = None,
        method: Union[PayoutMethod, str] = PayoutMethod.BANK_TRANSFER,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> PayoutRequest:
        """Submit a payout request for manual processing.

        Args:
            artist_id: Verified artist id
            amount: Pence to withdraw, or None for the full balance
            method: Payout method
            details: Method-specific details (account reference and so on)
            request_id: Idempotency key; an existing request with this id is
                returned unchanged

        Returns:
            The submitted PayoutRequest

        Raises:
            InvalidAmount: If the amount is not positive or no whole
                allocations reach the minimum payout within it
            InsufficientBalance: If the amount exceeds the balance
            NotEligible: If thresholds are not met
        """
        if amount is not None:
            validate_pence(amount, "payout amount", allow_zero=False)
        method = PayoutMethod(method)

        with self.locks.hold(artist_id):
            with self.repository.transaction() as conn:
                if request_id:
                    existing = self.repository.find_payout_request(request_id, conn)
                    if existing is not None:
                        if existing.artist_id != artist_id:
                            raise InvalidPayoutState(
                                request_id, existing.status.value,
                                f"Payout request {request_id} belongs to another artist",
                            )
                        return existing

                account = self.repository.get_account(artist_id, conn)
                self._enforce(account, amount, conn)

                request = PayoutRequest(
                    request_id=request_id or uuid.uuid4().hex,
                    artist_id=artist_id,
                    amount_requested=amount,
                    method=method,
                    method_details=dict(details or {}),
                    requested_at=self.clock(),
                    total_earned_at_request=account.total_escrow_earned,
                ).with_hash()
                self.repository.insert_payout_request(conn, request)

        logger.info(
            "Payout request %s submitted by artist %s for %s via %s",
            request.request_id, artist_id,
            f"{amount} pence" if amount is not None else "the full balance", method.value,
        )
        return request

    def process_payout(self, request_id: str, notes: Optional[str] = None) -> PayoutRequest:
        """Apply an operator-confirmed payout.

        Eligibility re-check, debit, counter update and status change form a
        single transaction; if any step fails nothing is written. Processing
        an already processed request returns it unchanged.

        Raises:
            PayoutRequestNotFound: If the request id is unknown
            InvalidPayoutState: If the request was rejected
            NotEligible: If the artist is no longer eligible
            InsufficientBalance: If the balance no longer covers the request
            InvalidAmount: If no whole allocations within the request reach
                the minimum payout
        """
        request = self.repository.get_payout_request(request_id)

        with self.locks.hold(request.artist_id):
            with self.repository.transaction() as conn:
                request = self.repository.get_payout_request(request_id, conn)
                if request.status == PayoutStatus.PROCESSED:
                    return request
                if request.status != PayoutStatus.SUBMITTED:
                    raise InvalidPayoutState(request_id, request.status.value)

                account = self.repository.get_account(request.artist_id, conn)
                self._enforce(account, request.amount_requested, conn)

                debit = self.ledger.debit_in(
                    conn, request.artist_id, request.amount_requested, request_id
                )
                # last_payout_total_earned never decreases, whatever order requests are processed in
                self.repository.record_payout_completed(
                    conn, request.artist_id, request.total_earned_at_request
                )
                processed = replace(
                    request,
                    status=PayoutStatus.PROCESSED,
                    processed_at=self.clock(),
                    amount_paid=debit.amount_debited,
                    notes=notes if notes is not None else request.notes,
                ).with_hash()
                self.repository.update_payout_request(conn, processed)

        logger.info(
            "Payout %s processed: %d pence paid to artist %s",
            request_id, processed.amount_paid, processed.artist_id,
        )
        return processed

    def reject_payout(self, request_id: str, notes: Optional[str] = None) -> PayoutRequest:
        """Mark a submitted request as rejected. The ledger is untouched."""
        with self.repository.transaction() as conn:
            request = self.repository.get_payout_request(request_id, conn)
            if request.status != PayoutStatus.SUBMITTED:
                raise InvalidPayoutState(request_id, request.status.value)
            rejected = replace(
                request,
                status=PayoutStatus.REJECTED,
                processed_at=self.clock(),
                notes=notes,
            ).with_hash()
            self.repository.update_payout_request(conn, rejected)

        logger.info("Payout %s rejected: %s", request_id, notes or "no reason given")
        return rejected

    def list_payout_requests(
        self,
        artist_id: Optional[str] = None,
        status: Optional[Union[PayoutStatus, str]] = None,
        limit: int = 100,
    ) -> List[PayoutRequest]:
        return self.repository.list_payout_requests(
            artist_id=artist_id,
            status=PayoutStatus(status) if status else None,
            limit=limit,
        )
