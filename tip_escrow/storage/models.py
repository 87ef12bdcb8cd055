"""
Data models for storage layer.

Defines ledger entities and the owner reference union.
"""

import hashlib
import json
import re
import unicodedata
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from fractions import Fraction
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

UNKNOWN_ARTIST_NAME = "Unknown Artist"

_WHITESPACE = re.compile(r"\s+")


def utcnow() -> datetime:
    """Timezone-aware current time used for every ledger timestamp."""
    return datetime.now(timezone.utc)


def fingerprint_artist_name(name: str) -> str:
    """Normalise an artist name into a matching fingerprint.

    Trimmed, case-folded and punctuation-insensitive, so ``" The Beatles! "``
    and ``"the beatles"`` share a fingerprint.
    """
    text = unicodedata.normalize("NFKC", name or "")
    text = "".join(ch for ch in text if not unicodedata.category(ch).startswith("P"))
    return _WHITESPACE.sub(" ", text.casefold()).strip()


class OwnerKind(Enum):
    """Discriminator stored alongside every owner key."""
    VERIFIED = "verified"
    UNVERIFIED = "unverified"


@dataclass(frozen=True)
class VerifiedArtist:
    """A registered, verified artist identity."""
    artist_id: str

    kind = OwnerKind.VERIFIED

    def __post_init__(self):
        if not self.artist_id or not self.artist_id.strip():
            raise ValueError("artist_id is required and cannot be empty")

    @property
    def key(self) -> str:
        return self.artist_id


@dataclass(frozen=True)
class UnverifiedArtist:
    """An artist known only by name (and maybe a platform channel id).

    ``aliases`` holds the fingerprints of featured artists on the same media;
    a verifying artist matching any of them can claim the record.
    """
    fingerprint: str
    display_name: str = ""
    channel_id: Optional[str] = None
    aliases: Tuple[str, ...] = ()

    kind = OwnerKind.UNVERIFIED

    @classmethod
    def from_name(
        cls,
        name: str,
        channel_id: Optional[str] = None,
        featured: Sequence[str] = (),
    ) -> "UnverifiedArtist":
        display = (name or "").strip() or UNKNOWN_ARTIST_NAME
        fingerprint = fingerprint_artist_name(display) or fingerprint_artist_name(UNKNOWN_ARTIST_NAME)
        aliases: List[str] = []
        for other in featured:
            alias = fingerprint_artist_name(other)
            if alias and alias != fingerprint and alias not in aliases:
                aliases.append(alias)
        return cls(
            fingerprint=fingerprint,
            display_name=display,
            channel_id=channel_id or None,
            aliases=tuple(aliases),
        )

    @property
    def key(self) -> str:
        return self.fingerprint


OwnerRef = Union[VerifiedArtist, UnverifiedArtist]


class AllocationStatus(Enum):
    """Lifecycle of an allocation record (one-way)."""
    PENDING = "pending"
    CLAIMED = "claimed"


class PayoutStatus(Enum):
    """Lifecycle of a payout request."""
    SUBMITTED = "submitted"
    PROCESSED = "processed"
    REJECTED = "rejected"


class PayoutMethod(Enum):
    """Ways an operator can pay an artist out."""
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    MANUAL = "manual"
    OTHER = "other"


@dataclass(frozen=True)
class TipEvent:
    """Immutable record of a confirmed tip.

    Emitted upstream only after the bidder's wallet has been debited.
    """
    tip_id: str
    media_id: str
    bidder_id: str
    amount: int
    timestamp: datetime


@dataclass(frozen=True)
class MediaInfo:
    """Media metadata needed for allocation and history display."""
    media_id: str
    title: str = ""
    artist_name: str = UNKNOWN_ARTIST_NAME
    channel_id: Optional[str] = None
    featured_artists: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OwnershipEntry:
    """One owner's share of a media item, as registered by rights holders."""
    media_id: str
    owner_ref: OwnerRef
    share: Fraction


@dataclass(frozen=True)
class AllocationRecord:
    """One tip's escrow credit to one owner.

    Append-only: only ``status``, ``claimed_at``, ``payout_request_id`` and the
    owner re-key performed by matching may change after insertion.
    """
    allocation_id: str
    tip_id: str
    media_id: str
    owner_ref: OwnerRef
    share: Fraction
    amount: int
    allocated_at: datetime
    status: AllocationStatus = AllocationStatus.PENDING
    claimed_at: Optional[datetime] = None
    payout_request_id: Optional[str] = None
    matched_at: Optional[datetime] = None
    source_fingerprint: Optional[str] = None
    transaction_hash: Optional[str] = None

    @property
    def is_unclaimed_pool(self) -> bool:
        return isinstance(self.owner_ref, UnverifiedArtist)

    def compute_hash(self) -> str:
        """SHA-256 over the canonical fields, used for tamper detection."""
        payload = {
            "allocation_id": self.allocation_id,
            "tip_id": self.tip_id,
            "media_id": self.media_id,
            "owner_kind": self.owner_ref.kind.value,
            "owner_key": self.owner_ref.key,
            "owner_channel_id": getattr(self.owner_ref, "channel_id", None),
            "owner_aliases": list(getattr(self.owner_ref, "aliases", ())),
            "share": str(self.share),
            "amount": self.amount,
            "allocated_at": self.allocated_at.isoformat(),
            "status": self.status.value,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "payout_request_id": self.payout_request_id,
            "matched_at": self.matched_at.isoformat() if self.matched_at else None,
            "source_fingerprint": self.source_fingerprint,
        }
        return _sha256(payload)

    def with_hash(self) -> "AllocationRecord":
        return replace(self, transaction_hash=self.compute_hash())


@dataclass(frozen=True)
class ArtistEscrowAccount:
    """Materialised view of an artist's allocation stream."""
    artist_id: str
    balance: int = 0
    total_escrow_earned: int = 0
    last_payout_total_earned: int = 0
    payouts_completed: int = 0
    version: int = 0

    @property
    def earned_since_last_payout(self) -> int:
        return self.total_escrow_earned - self.last_payout_total_earned


@dataclass(frozen=True)
class PayoutRequest:
    """An artist's request to withdraw escrow, processed by an operator."""
    request_id: str
    artist_id: str
    amount_requested: Optional[int]
    method: PayoutMethod
    method_details: Dict[str, Any]
    requested_at: datetime
    total_earned_at_request: int
    status: PayoutStatus = PayoutStatus.SUBMITTED
    processed_at: Optional[datetime] = None
    amount_paid: Optional[int] = None
    notes: Optional[str] = None
    transaction_hash: Optional[str] = None

    def compute_hash(self) -> str:
        """SHA-256 over the canonical fields, used for tamper detection."""
        payload = {
            "request_id": self.request_id,
            "artist_id": self.artist_id,
            "amount_requested": self.amount_requested,
            "method": self.method.value,
            "requested_at": self.requested_at.isoformat(),
            "total_earned_at_request": self.total_earned_at_request,
            "status": self.status.value,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "amount_paid": self.amount_paid,
        }
        return _sha256(payload)

    def with_hash(self) -> "PayoutRequest":
        return replace(self, transaction_hash=self.compute_hash())


@dataclass(frozen=True)
class DebitResult:
    """Outcome of claiming pending records against a payout."""
    artist_id: str
    payout_request_id: str
    amount_requested: Optional[int]
    amount_debited: int
    claimed_allocation_ids: Tuple[str, ...] = field(default_factory=tuple)
    balance_after: int = 0


@dataclass(frozen=True)
class EscrowStats:
    """Ledger-wide totals for operator dashboards."""
    unclaimed_total: int
    unclaimed_count: int
    pending_verified_total: int
    claimed_total: int
    artists_with_balance: int
    platform_fee_total: int


@dataclass(frozen=True)
class IntegrityReport:
    """Result of hash verification and balance reconciliation."""
    tampered_allocations: List[str]
    tampered_payouts: List[str]
    drifted_accounts: List[str]

    @property
    def ok(self) -> bool:
        return not (self.tampered_allocations or self.tampered_payouts or self.drifted_accounts)


def _sha256(payload: Dict[str, Any]) -> str:
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
