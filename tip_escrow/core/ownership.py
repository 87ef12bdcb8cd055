"""
Ownership resolution for media items.

Turns registered owner entries into exact fractional shares that sum to one.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction
from typing import Dict, List, Optional, Sequence, Tuple, Union

from tip_escrow.config.loader import OwnershipConfig
from tip_escrow.storage.models import (
    UNKNOWN_ARTIST_NAME,
    MediaInfo,
    OwnerRef,
    OwnershipEntry,
    UnverifiedArtist,
)
from tip_escrow.storage.repository import LedgerRepository

from .errors import InvalidOwnership

logger = logging.getLogger(__name__)

ShareInput = Union[Fraction, Decimal, int, str]


@dataclass(frozen=True)
class ResolvedOwnership:
    """Owners of a media item with shares summing to exactly one.

    An empty ``shares`` list means ownership is unresolved; the artist pool
    then goes to the unclaimed bucket for ``unresolved_owner``.
    """
    media: MediaInfo
    shares: List[Tuple[OwnerRef, Fraction]]

    @property
    def unresolved(self) -> bool:
        return not self.shares

    @property
    def unresolved_owner(self) -> UnverifiedArtist:
        return UnverifiedArtist.from_name(
            self.media.artist_name, self.media.channel_id, self.media.featured_artists
        )


def to_fraction(share: ShareInput) -> Fraction:
    """Convert a share to an exact fraction. Floats are refused."""
    if isinstance(share, (bool, float)):
        raise InvalidOwnership(f"Shares must be exact (Fraction, Decimal, int or str), got {share!r}")
    try:
        return Fraction(share)
    except (ValueError, ZeroDivisionError):
        raise InvalidOwnership(f"Invalid share: {share!r}")


def normalize_shares(
    shares: Sequence[Tuple[OwnerRef, ShareInput]],
    tolerance: Decimal = Decimal("0.0001"),
    media_id: str = "",
) -> List[Tuple[OwnerRef, Fraction]]:
    """Merge duplicate owners, drop zero shares and rescale to sum to one.

    Args:
        shares: ``(owner, share)`` pairs in registration order
        tolerance: Allowed deviation of the raw sum from one before a
            warning is logged
        media_id: Used in log messages only

    Returns:
        ``(owner, fraction)`` pairs in first-seen order, summing to exactly 1

    Raises:
        InvalidOwnership: If a share is negative or all shares are zero
    """
    merged: Dict[OwnerRef, Fraction] = {}
    for owner, share in shares:
        value = to_fraction(share)
        if value < 0:
            raise InvalidOwnership(f"Negative share {value} for {owner} on media {media_id}")
        merged[owner] = merged.get(owner, Fraction(0)) + value

    merged = {owner: value for owner, value in merged.items() if value > 0}
    if not merged:
        if shares:
            raise InvalidOwnership(f"All ownership shares are zero for media {media_id}")
        return []

    total = sum(merged.values(), Fraction(0))
    if abs(total - 1) > Fraction(tolerance):
        logger.warning(
            "Ownership shares for media %s sum to %s, normalising to 1",
            media_id, total,
        )
    return [(owner, value / total) for owner, value in merged.items()]


class OwnershipResolver:
    """Reads ownership registered by the rights workflow.

    Read-only from the ledger's point of view; :meth:`register_media` exists
    for the registration workflow, operator tooling and demos.
    """

    def __init__(self, repository: LedgerRepository, config: Optional[OwnershipConfig] = None):
        self.repository = repository
        self.config = config or OwnershipConfig()

    def resolve(self, media_id: str, conn=None) -> ResolvedOwnership:
        media = self.repository.get_media(media_id, conn) or MediaInfo(
            media_id=media_id, artist_name=UNKNOWN_ARTIST_NAME
        )
        entries = self.repository.get_ownership(media_id, conn)
        shares = normalize_shares(
            [(entry.owner_ref, entry.share) for entry in entries],
            tolerance=self.config.share_tolerance,
            media_id=media_id,
        )
        return ResolvedOwnership(media=media, shares=shares)

    def register_media(
        self,
        media_id: str,
        artist_name: str,
        owners: Sequence[Tuple[OwnerRef, ShareInput]],
        title: str = "",
        channel_id: Optional[str] = None,
        featured_artists: Sequence[str] = (),
    ) -> ResolvedOwnership:
        """Store a media item with its owners, replacing any earlier owners.

        Shares are validated and normalised before they are stored.
        ``featured_artists`` are the other credited names; while ownership is
        unresolved any of them can claim the unclaimed pool.
        """
        if not media_id or not media_id.strip():
            raise ValueError("media_id is required and cannot be empty")
        media = MediaInfo(
            media_id=media_id,
            title=title,
            artist_name=(artist_name or "").strip() or UNKNOWN_ARTIST_NAME,
            channel_id=channel_id or None,
            featured_artists=tuple(name.strip() for name in featured_artists if name and name.strip()),
        )
        shares = normalize_shares(owners, tolerance=self.config.share_tolerance, media_id=media_id)
        entries = [
            OwnershipEntry(media_id=media_id, owner_ref=owner, share=share)
            for owner, share in shares
        ]
        with self.repository.transaction() as conn:
            self.repository.save_media(conn, media, entries)
        logger.info("Registered media %s with %d owner(s)", media_id, len(entries))
        return ResolvedOwnership(media=media, shares=shares)
