"""
Matching of unclaimed allocations to verified artists.

When an artist verifies, pool records held under their name fingerprint or
platform channel id are re-keyed to their artist id. The records stay
pending: the money becomes claimable balance, it is not paid out.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from tip_escrow.storage.models import (
    AllocationRecord,
    fingerprint_artist_name,
    utcnow,
)
from tip_escrow.storage.repository import LedgerRepository

from .locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchResult:
    """Outcome of a match attempt. Zero matches is a normal outcome."""
    artist_id: str
    matched_count: int = 0
    matched_total: int = 0
    allocation_ids: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def matched(self) -> bool:
        return self.matched_count > 0


class MatchingService:
    """Re-keys unclaimed-pool records to a verified artist."""

    def __init__(
        self,
        repository: LedgerRepository,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.locks = locks or KeyedLock()
        self.clock = clock

    def find_candidates(
        self,
        artist_name: Optional[str] = None,
        channel_id: Optional[str] = None,
        conn=None,
    ) -> List[AllocationRecord]:
        """Pool records an artist with this name or channel could claim."""
        fingerprint = fingerprint_artist_name(artist_name) if artist_name else ""
        if not fingerprint and not channel_id:
            return []
        return self.repository.find_unclaimed(fingerprint or None, channel_id or None, conn)

    def match_unclaimed(
        self,
        artist_id: str,
        artist_name: str,
        channel_id: Optional[str] = None,
    ) -> MatchResult:
        """Move matching pool records to ``artist_id``.

        Safe to call repeatedly: records already re-keyed are no longer in
        the pool, and a record can only ever be re-keyed once.

        Args:
            artist_id: Verified artist receiving the records
            artist_name: Candidate artist name (compared by fingerprint)
            channel_id: Optional platform channel id to match on as well

        Returns:
            MatchResult with the count and total moved

        Raises:
            ValueError: If neither a usable name nor a channel id is given
        """
        if not artist_id or not artist_id.strip():
            raise ValueError("artist_id is required and cannot be empty")
        if not fingerprint_artist_name(artist_name or "") and not channel_id:
            raise ValueError("Artist name is required for matching")

        matched: List[AllocationRecord] = []
        with self.locks.hold(artist_id):
            with self.repository.transaction() as conn:
                now = self.clock()
                for record in self.find_candidates(artist_name, channel_id, conn):
                    if self.repository.rekey_to_artist(conn, record, artist_id, now):
                        matched.append(record)
                if matched:
                    self.repository.credit_account(
                        conn, artist_id, sum(record.amount for record in matched)
                    )

        result = MatchResult(
            artist_id=artist_id,
            matched_count=len(matched),
            matched_total=sum(record.amount for record in matched),
            allocation_ids=tuple(record.allocation_id for record in matched),
        )
        if result.matched:
            logger.info(
                "Matched %d unclaimed allocation(s) totalling %d pence to artist %s",
                result.matched_count, result.matched_total, artist_id,
            )
        else:
            logger.info("No unclaimed allocations matched artist %s (%r)", artist_id, artist_name)
        return result
