"""
Error taxonomy for the escrow ledger.

Ownership that cannot be resolved and matches that find nothing are normal
outcomes and are reported on result objects, not raised.
"""

from typing import Optional


class EscrowError(Exception):
    """Base class for all escrow ledger errors."""


class InvalidAmount(EscrowError, ValueError):
    """Raised for non-positive, non-integer or otherwise unusable amounts."""


class Underflow(EscrowError, ArithmeticError):
    """Raised when a subtraction would produce a negative amount."""


class DuplicateTip(EscrowError):
    """Raised by storage when a tip id has already been allocated.

    The allocation engine turns this into a no-op result.
    """
    def __init__(self, tip_id: str):
        super().__init__(f"Tip {tip_id} has already been allocated")
        self.tip_id = tip_id


class InsufficientBalance(EscrowError):
    """Raised when a debit exceeds the artist's pending balance."""
    def __init__(self, artist_id: str, balance: int, requested: int):
        super().__init__(
            f"Requested {requested} pence exceeds available balance "
            f"{balance} pence for artist {artist_id}"
        )
        self.artist_id = artist_id
        self.balance = balance
        self.requested = requested


class NotEligible(EscrowError):
    """Raised when payout thresholds are not met."""
    def __init__(self, artist_id: str, reason: str, remaining_to_eligible: int):
        super().__init__(f"Artist {artist_id} is not eligible for payout: {reason}")
        self.artist_id = artist_id
        self.reason = reason
        self.remaining_to_eligible = remaining_to_eligible


class InvalidOwnership(EscrowError, ValueError):
    """Raised when ownership shares cannot be turned into a valid split."""


class PayoutRequestNotFound(EscrowError, LookupError):
    """Raised when a payout request id is unknown."""
    def __init__(self, request_id: str):
        super().__init__(f"Payout request not found: {request_id}")
        self.request_id = request_id


class InvalidPayoutState(EscrowError):
    """Raised when a payout request cannot make the requested transition."""
    def __init__(self, request_id: str, status: str, message: Optional[str] = None):
        super().__init__(message or f"Payout request {request_id} is {status}")
        self.request_id = request_id
        self.status = status


class LedgerUnavailable(EscrowError):
    """Raised for transient storage failures (lock contention, I/O).

    The ledger is left in its pre-operation state; callers retry with the
    same idempotency key.
    """
