"""
Repository pattern for data access.

Handles database operations and data persistence logic. Functions that take
a ``conn`` argument run inside a caller-owned transaction so that several
writes can form one atomic unit.
"""

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from fractions import Fraction
from typing import Iterator, List, Optional, Sequence, Tuple

from tip_escrow.core.errors import (
    DuplicateTip,
    InvalidPayoutState,
    LedgerUnavailable,
    PayoutRequestNotFound,
)

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import (
    AllocationRecord,
    AllocationStatus,
    ArtistEscrowAccount,
    EscrowStats,
    MediaInfo,
    OwnerKind,
    OwnerRef,
    OwnershipEntry,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    TipEvent,
    UnverifiedArtist,
    VerifiedArtist,
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS media (
        media_id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        artist_name TEXT NOT NULL,
        channel_id TEXT,
        featured_artists TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS media_owner (
        media_id TEXT NOT NULL REFERENCES media(media_id),
        position INTEGER NOT NULL,
        owner_kind TEXT NOT NULL CHECK (owner_kind IN ('verified', 'unverified')),
        owner_key TEXT NOT NULL,
        display_name TEXT,
        channel_id TEXT,
        aliases TEXT NOT NULL DEFAULT '[]',
        share TEXT NOT NULL,
        PRIMARY KEY (media_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tip_event (
        tip_id TEXT PRIMARY KEY,
        media_id TEXT NOT NULL,
        bidder_id TEXT NOT NULL,
        amount INTEGER NOT NULL CHECK (amount > 0),
        timestamp TEXT NOT NULL,
        artist_pool INTEGER NOT NULL CHECK (artist_pool >= 0),
        platform_fee INTEGER NOT NULL CHECK (platform_fee >= 0),
        processed_at TEXT NOT NULL,
        CHECK (artist_pool + platform_fee = amount)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS allocation_record (
        allocation_id TEXT PRIMARY KEY,
        tip_id TEXT NOT NULL REFERENCES tip_event(tip_id),
        media_id TEXT NOT NULL,
        owner_kind TEXT NOT NULL CHECK (owner_kind IN ('verified', 'unverified')),
        owner_key TEXT NOT NULL,
        display_name TEXT,
        channel_id TEXT,
        share TEXT NOT NULL,
        amount INTEGER NOT NULL CHECK (amount >= 0),
        allocated_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'claimed')),
        claimed_at TEXT,
        payout_request_id TEXT,
        matched_at TEXT,
        source_fingerprint TEXT,
        transaction_hash TEXT NOT NULL,
        aliases TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_allocation_owner_status
        ON allocation_record (owner_kind, owner_key, status)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_allocation_channel
        ON allocation_record (channel_id, owner_kind)
    """,
    """
    CREATE TABLE IF NOT EXISTS artist_account (
        artist_id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        total_escrow_earned INTEGER NOT NULL DEFAULT 0 CHECK (total_escrow_earned >= 0),
        last_payout_total_earned INTEGER NOT NULL DEFAULT 0,
        payouts_completed INTEGER NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payout_request (
        request_id TEXT PRIMARY KEY,
        artist_id TEXT NOT NULL,
        amount_requested INTEGER CHECK (amount_requested IS NULL OR amount_requested > 0),
        method TEXT NOT NULL,
        method_details TEXT NOT NULL DEFAULT '{}',
        requested_at TEXT NOT NULL,
        total_earned_at_request INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'submitted'
            CHECK (status IN ('submitted', 'processed', 'rejected')),
        processed_at TEXT,
        amount_paid INTEGER,
        notes TEXT,
        transaction_hash TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_payout_artist_status
        ON payout_request (artist_id, status)
    """,
]

_ALLOCATION_COLUMNS = """
    allocation_id, tip_id, media_id, owner_kind, owner_key, display_name,
    channel_id, share, amount, allocated_at, status, claimed_at,
    payout_request_id, matched_at, source_fingerprint, transaction_hash,
    aliases
"""

_PAYOUT_COLUMNS = """
    request_id, artist_id, amount_requested, method, method_details,
    requested_at, total_earned_at_request, status, processed_at,
    amount_paid, notes, transaction_hash
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    ``allocation_record`` is append-only apart from the status transition and
    the unclaimed-pool re-key. ``tip_event.tip_id`` is the idempotency key.

    Args:
        db_path: Path to SQLite database file
    """
    with transaction(db_path) as conn:
        for statement in SCHEMA:
            conn.execute(statement)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _owner_from_row(
    kind: str,
    key: str,
    display_name: Optional[str],
    channel_id: Optional[str],
    aliases: Optional[str] = None,
) -> OwnerRef:
    if kind == OwnerKind.VERIFIED.value:
        return VerifiedArtist(artist_id=key)
    return UnverifiedArtist(
        fingerprint=key,
        display_name=display_name or "",
        channel_id=channel_id,
        aliases=tuple(json.loads(aliases or "[]")),
    )


def _owner_columns(owner: OwnerRef) -> Tuple[str, str, Optional[str], Optional[str], str]:
    if isinstance(owner, UnverifiedArtist):
        return owner.kind.value, owner.key, owner.display_name, owner.channel_id, _json_list(owner.aliases)
    return owner.kind.value, owner.key, None, None, "[]"


def _json_list(values: Sequence[str]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def _allocation_from_row(row: Sequence) -> AllocationRecord:
    return AllocationRecord(
        allocation_id=row[0],
        tip_id=row[1],
        media_id=row[2],
        owner_ref=_owner_from_row(row[3], row[4], row[5], row[6], row[16]),
        share=Fraction(row[7]),
        amount=row[8],
        allocated_at=datetime.fromisoformat(row[9]),
        status=AllocationStatus(row[10]),
        claimed_at=_parse_ts(row[11]),
        payout_request_id=row[12],
        matched_at=_parse_ts(row[13]),
        source_fingerprint=row[14],
        transaction_hash=row[15],
    )


def _payout_from_row(row: Sequence) -> PayoutRequest:
    return PayoutRequest(
        request_id=row[0],
        artist_id=row[1],
        amount_requested=row[2],
        method=PayoutMethod(row[3]),
        method_details=json.loads(row[4] or "{}"),
        requested_at=datetime.fromisoformat(row[5]),
        total_earned_at_request=row[6],
        status=PayoutStatus(row[7]),
        processed_at=_parse_ts(row[8]),
        amount_paid=row[9],
        notes=row[10],
        transaction_hash=row[11],
    )


class LedgerRepository:
    """Repository for the escrow ledger tables.

    Read helpers open their own short-lived connection when no ``conn`` is
    given. Write helpers always require the caller's transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with transaction(self.db_path) as conn:
            yield conn

    @contextmanager
    def _reader(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_connection(self.db_path)
        try:
            yield own
        finally:
            own.close()

    # ------------------------------------------------------------------
    # Media and ownership (written by the rights-registration workflow)
    # ------------------------------------------------------------------

    def save_media(self, conn: sqlite3.Connection, media: MediaInfo, owners: Sequence[OwnershipEntry]) -> None:
        """Insert or replace a media item and its full owner list."""
        conn.execute(
            """
            INSERT INTO media (media_id, title, artist_name, channel_id, featured_artists)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(media_id) DO UPDATE SET
                title = excluded.title,
                artist_name = excluded.artist_name,
                channel_id = excluded.channel_id,
                featured_artists = excluded.featured_artists
            """,
            (
                media.media_id,
                media.title,
                media.artist_name,
                media.channel_id,
                _json_list(media.featured_artists),
            ),
        )
        conn.execute("DELETE FROM media_owner WHERE media_id = ?", (media.media_id,))
        for position, entry in enumerate(owners):
            kind, key, display_name, channel_id, aliases = _owner_columns(entry.owner_ref)
            conn.execute(
                """
                INSERT INTO media_owner
                (media_id, position, owner_kind, owner_key, display_name, channel_id, aliases, share)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (media.media_id, position, kind, key, display_name, channel_id, aliases, str(entry.share)),
            )

    def get_media(self, media_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[MediaInfo]:
        with self._reader(conn) as c:
            row = c.execute(
                """
                SELECT media_id, title, artist_name, channel_id, featured_artists
                FROM media WHERE media_id = ?
                """,
                (media_id,),
            ).fetchone()
        if row is None:
            return None
        return MediaInfo(
            media_id=row[0],
            title=row[1],
            artist_name=row[2],
            channel_id=row[3],
            featured_artists=tuple(json.loads(row[4] or "[]")),
        )

    def get_ownership(self, media_id: str, conn: Optional[sqlite3.Connection] = None) -> List[OwnershipEntry]:
        """Owner entries for a media item in registration order."""
        with self._reader(conn) as c:
            rows = c.execute(
                """
                SELECT owner_kind, owner_key, display_name, channel_id, aliases, share
                FROM media_owner WHERE media_id = ? ORDER BY position
                """,
                (media_id,),
            ).fetchall()
        return [
            OwnershipEntry(
                media_id=media_id,
                owner_ref=_owner_from_row(row[0], row[1], row[2], row[3], row[4]),
                share=Fraction(row[5]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Tips and allocations
    # ------------------------------------------------------------------

    def insert_tip_event(
        self,
        conn: sqlite3.Connection,
        tip: TipEvent,
        artist_pool: int,
        platform_fee: int,
        processed_at: datetime,
    ) -> None:
        """Record a tip as processed.

        Raises:
            DuplicateTip: If the tip id is already present
        """
        try:
            conn.execute(
                """
                INSERT INTO tip_event
                (tip_id, media_id, bidder_id, amount, timestamp, artist_pool, platform_fee, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tip.tip_id,
                    tip.media_id,
                    tip.bidder_id,
                    tip.amount,
                    tip.timestamp.isoformat(),
                    artist_pool,
                    platform_fee,
                    processed_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            if "tip_event.tip_id" in str(e):
                raise DuplicateTip(tip.tip_id) from e
            raise

    def get_tip_event(self, tip_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Tuple[TipEvent, int, int]]:
        """Return ``(tip, artist_pool, platform_fee)`` for a processed tip."""
        with self._reader(conn) as c:
            row = c.execute(
                """
                SELECT tip_id, media_id, bidder_id, amount, timestamp, artist_pool, platform_fee
                FROM tip_event WHERE tip_id = ?
                """,
                (tip_id,),
            ).fetchone()
        if row is None:
            return None
        tip = TipEvent(
            tip_id=row[0],
            media_id=row[1],
            bidder_id=row[2],
            amount=row[3],
            timestamp=datetime.fromisoformat(row[4]),
        )
        return tip, row[5], row[6]

    def insert_allocation(self, conn: sqlite3.Connection, record: AllocationRecord) -> None:
        kind, key, display_name, channel_id, aliases = _owner_columns(record.owner_ref)
        conn.execute(
            f"""
            INSERT INTO allocation_record ({_ALLOCATION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.allocation_id,
                record.tip_id,
                record.media_id,
                kind,
                key,
                display_name,
                channel_id,
                str(record.share),
                record.amount,
                record.allocated_at.isoformat(),
                record.status.value,
                _ts(record.claimed_at),
                record.payout_request_id,
                _ts(record.matched_at),
                record.source_fingerprint,
                record.transaction_hash or record.compute_hash(),
                aliases,
            ),
        )

    def get_allocations_for_tip(self, tip_id: str, conn: Optional[sqlite3.Connection] = None) -> List[AllocationRecord]:
        with self._reader(conn) as c:
            rows = c.execute(
                f"SELECT {_ALLOCATION_COLUMNS} FROM allocation_record WHERE tip_id = ? ORDER BY rowid",
                (tip_id,),
            ).fetchall()
        return [_allocation_from_row(row) for row in rows]

    def get_allocation(self, allocation_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[AllocationRecord]:
        with self._reader(conn) as c:
            row = c.execute(
                f"SELECT {_ALLOCATION_COLUMNS} FROM allocation_record WHERE allocation_id = ?",
                (allocation_id,),
            ).fetchone()
        return _allocation_from_row(row) if row else None

    def get_pending_for_artist(self, conn: Optional[sqlite3.Connection], artist_id: str) -> List[AllocationRecord]:
        """Pending records for a verified artist, oldest first."""
        with self._reader(conn) as c:
            rows = c.execute(
                f"""
                SELECT {_ALLOCATION_COLUMNS} FROM allocation_record
                WHERE owner_kind = 'verified' AND owner_key = ? AND status = 'pending'
                ORDER BY allocated_at ASC, rowid ASC
                """,
                (artist_id,),
            ).fetchall()
        return [_allocation_from_row(row) for row in rows]

    def get_artist_history(self, artist_id: str, limit: int = 100) -> List[AllocationRecord]:
        """All records ever credited to an artist, newest first."""
        with self._reader(None) as c:
            rows = c.execute(
                f"""
                SELECT {_ALLOCATION_COLUMNS} FROM allocation_record
                WHERE owner_kind = 'verified' AND owner_key = ?
                ORDER BY allocated_at DESC, rowid DESC LIMIT ?
                """,
                (artist_id, limit),
            ).fetchall()
        return [_allocation_from_row(row) for row in rows]

    def find_unclaimed(
        self,
        fingerprint: Optional[str] = None,
        channel_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[AllocationRecord]:
        """Unclaimed-pool records matching a fingerprint and/or channel id.

        The fingerprint matches the primary artist name or any featured
        artist alias. With neither filter, the whole pool is returned.
        Oldest first.
        """
        query = f"SELECT {_ALLOCATION_COLUMNS} FROM allocation_record WHERE owner_kind = 'unverified'"
        params: List[str] = []
        conditions = []
        if fingerprint:
            # Fingerprints carry no punctuation, so a quoted LIKE is an exact element match
            conditions.append("owner_key = ?")
            conditions.append("aliases LIKE ?")
            params.extend([fingerprint, f'%"{fingerprint}"%'])
        if channel_id:
            conditions.append("channel_id = ?")
            params.append(channel_id)
        if conditions:
            query += " AND (" + " OR ".join(conditions) + ")"
        query += " ORDER BY allocated_at ASC, rowid ASC"

        with self._reader(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [_allocation_from_row(row) for row in rows]

    def unclaimed_totals(self) -> List[Tuple[str, str, int, int]]:
        """``(fingerprint, display_name, record_count, total)`` per pool key."""
        with self._reader(None) as c:
            rows = c.execute(
                """
                SELECT owner_key, MIN(display_name), COUNT(*), SUM(amount)
                FROM allocation_record WHERE owner_kind = 'unverified'
                GROUP BY owner_key ORDER BY SUM(amount) DESC, owner_key
                """
            ).fetchall()
        return [(row[0], row[1] or "", row[2], row[3] or 0) for row in rows]

    def rekey_to_artist(
        self,
        conn: sqlite3.Connection,
        record: AllocationRecord,
        artist_id: str,
        matched_at: datetime,
    ) -> bool:
        """Move an unclaimed-pool record to a verified artist.

        Guarded on the record still being unverified, so a concurrent match
        cannot move it twice.

        Returns:
            True if this call performed the re-key
        """
        if not isinstance(record.owner_ref, UnverifiedArtist):
            return False
        rekeyed = replace(
            record,
            owner_ref=VerifiedArtist(artist_id=artist_id),
            matched_at=matched_at,
            source_fingerprint=record.owner_ref.fingerprint,
        )
        cursor = conn.execute(
            """
            UPDATE allocation_record
            SET owner_kind = 'verified', owner_key = ?, matched_at = ?,
                source_fingerprint = ?, transaction_hash = ?
            WHERE allocation_id = ? AND owner_kind = 'unverified'
            """,
            (
                artist_id,
                matched_at.isoformat(),
                record.owner_ref.fingerprint,
                rekeyed.compute_hash(),
                record.allocation_id,
            ),
        )
        return cursor.rowcount == 1

    def mark_claimed(
        self,
        conn: sqlite3.Connection,
        records: Sequence[AllocationRecord],
        claimed_at: datetime,
        payout_request_id: str,
    ) -> None:
        """Transition pending records to claimed.

        Raises:
            InvalidPayoutState: If any record was no longer pending
        """
        for record in records:
            claimed = replace(
                record,
                status=AllocationStatus.CLAIMED,
                claimed_at=claimed_at,
                payout_request_id=payout_request_id,
            )
            cursor = conn.execute(
                """
                UPDATE allocation_record
                SET status = 'claimed', claimed_at = ?, payout_request_id = ?, transaction_hash = ?
                WHERE allocation_id = ? AND status = 'pending'
                """,
                (claimed_at.isoformat(), payout_request_id, claimed.compute_hash(), record.allocation_id),
            )
            if cursor.rowcount != 1:
                raise InvalidPayoutState(
                    payout_request_id,
                    PayoutStatus.SUBMITTED.value,
                    f"Allocation {record.allocation_id} is no longer pending",
                )

    # ------------------------------------------------------------------
    # Artist accounts (materialised balances)
    # ------------------------------------------------------------------

    def get_account(self, artist_id: str, conn: Optional[sqlite3.Connection] = None) -> ArtistEscrowAccount:
        with self._reader(conn) as c:
            row = c.execute(
                """
                SELECT artist_id, balance, total_escrow_earned, last_payout_total_earned,
                       payouts_completed, version
                FROM artist_account WHERE artist_id = ?
                """,
                (artist_id,),
            ).fetchone()
        if row is None:
            return ArtistEscrowAccount(artist_id=artist_id)
        return ArtistEscrowAccount(
            artist_id=row[0],
            balance=row[1],
            total_escrow_earned=row[2],
            last_payout_total_earned=row[3],
            payouts_completed=row[4],
            version=row[5],
        )

    def credit_account(self, conn: sqlite3.Connection, artist_id: str, amount: int) -> None:
        conn.execute(
            """
            INSERT INTO artist_account (artist_id, balance, total_escrow_earned, version)
            VALUES (?, ?, ?, 1)
            ON CONFLICT(artist_id) DO UPDATE SET
                balance = balance + excluded.balance,
                total_escrow_earned = total_escrow_earned + excluded.total_escrow_earned,
                version = version + 1
            """,
            (artist_id, amount, amount),
        )

    def debit_account(self, conn: sqlite3.Connection, artist_id: str, amount: int, expected_version: int) -> None:
        """Reduce an artist's balance, checking the account version.

        Raises:
            LedgerUnavailable: If the account changed since it was read
        """
        cursor = conn.execute(
            """
            UPDATE artist_account SET balance = balance - ?, version = version + 1
            WHERE artist_id = ? AND version = ? AND balance >= ?
            """,
            (amount, artist_id, expected_version, amount),
        )
        if cursor.rowcount != 1:
            raise LedgerUnavailable(f"Account for artist {artist_id} changed during debit")

    def record_payout_completed(self, conn: sqlite3.Connection, artist_id: str, total_earned: int) -> None:
        conn.execute(
            """
            UPDATE artist_account
            SET last_payout_total_earned = MAX(last_payout_total_earned, ?),
                payouts_completed = payouts_completed + 1,
                version = version + 1
            WHERE artist_id = ?
            """,
            (total_earned, artist_id),
        )

    def list_accounts(self) -> List[ArtistEscrowAccount]:
        with self._reader(None) as c:
            rows = c.execute(
                """
                SELECT artist_id, balance, total_escrow_earned, last_payout_total_earned,
                       payouts_completed, version
                FROM artist_account ORDER BY artist_id
                """
            ).fetchall()
        return [ArtistEscrowAccount(*row) for row in rows]

    def sum_allocations(self, artist_id: str) -> Tuple[int, int]:
        """Recompute ``(pending_total, all_time_total)`` from the record stream."""
        with self._reader(None) as c:
            row = c.execute(
                """
                SELECT COALESCE(SUM(CASE WHEN status = 'pending' THEN amount ELSE 0 END), 0),
                       COALESCE(SUM(amount), 0)
                FROM allocation_record
                WHERE owner_kind = 'verified' AND owner_key = ?
                """,
                (artist_id,),
            ).fetchone()
        return row[0], row[1]

    def iter_allocations(self) -> Iterator[AllocationRecord]:
        conn = get_connection(self.db_path)
        try:
            for row in conn.execute(f"SELECT {_ALLOCATION_COLUMNS} FROM allocation_record ORDER BY rowid"):
                yield _allocation_from_row(row)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Payout requests
    # ------------------------------------------------------------------

    def insert_payout_request(self, conn: sqlite3.Connection, request: PayoutRequest) -> None:
        conn.execute(
            f"""
            INSERT INTO payout_request ({_PAYOUT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.request_id,
                request.artist_id,
                request.amount_requested,
                request.method.value,
                json.dumps(request.method_details, sort_keys=True),
                request.requested_at.isoformat(),
                request.total_earned_at_request,
                request.status.value,
                _ts(request.processed_at),
                request.amount_paid,
                request.notes,
                request.transaction_hash or request.compute_hash(),
            ),
        )

    def get_payout_request(self, request_id: str, conn: Optional[sqlite3.Connection] = None) -> PayoutRequest:
        """Fetch a payout request.

        Raises:
            PayoutRequestNotFound: If the id is unknown
        """
        with self._reader(conn) as c:
            row = c.execute(
                f"SELECT {_PAYOUT_COLUMNS} FROM payout_request WHERE request_id = ?",
                (request_id,),
            ).fetchone()
        if row is None:
            raise PayoutRequestNotFound(request_id)
        return _payout_from_row(row)

    def find_payout_request(self, request_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[PayoutRequest]:
        try:
            return self.get_payout_request(request_id, conn)
        except PayoutRequestNotFound:
            return None

    def update_payout_request(self, conn: sqlite3.Connection, request: PayoutRequest) -> None:
        """Persist a status transition out of ``submitted``."""
        request = request.with_hash()
        cursor = conn.execute(
            """
            UPDATE payout_request
            SET status = ?, processed_at = ?, amount_paid = ?, notes = ?, transaction_hash = ?
            WHERE request_id = ? AND status = 'submitted'
            """,
            (
                request.status.value,
                _ts(request.processed_at),
                request.amount_paid,
                request.notes,
                request.transaction_hash,
                request.request_id,
            ),
        )
        if cursor.rowcount != 1:
            current = self.get_payout_request(request.request_id, conn)
            raise InvalidPayoutState(request.request_id, current.status.value)

    def list_payout_requests(
        self,
        artist_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
        limit: int = 100,
    ) -> List[PayoutRequest]:
        """Payout requests, newest first, optionally filtered."""
        query = f"SELECT {_PAYOUT_COLUMNS} FROM payout_request"
        params: List = []
        conditions = []
        if artist_id:
            conditions.append("artist_id = ?")
            params.append(artist_id)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY requested_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._reader(None) as c:
            rows = c.execute(query, params).fetchall()
        return [_payout_from_row(row) for row in rows]

    def iter_payout_requests(self) -> Iterator[PayoutRequest]:
        conn = get_connection(self.db_path)
        try:
            for row in conn.execute(f"SELECT {_PAYOUT_COLUMNS} FROM payout_request ORDER BY rowid"):
                yield _payout_from_row(row)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self) -> EscrowStats:
        with self._reader(None) as c:
            unclaimed = c.execute(
                """
                SELECT COALESCE(SUM(amount), 0), COUNT(*)
                FROM allocation_record WHERE owner_kind = 'unverified'
                """
            ).fetchone()
            pending_verified = c.execute(
                """
                SELECT COALESCE(SUM(amount), 0) FROM allocation_record
                WHERE owner_kind = 'verified' AND status = 'pending'
                """
            ).fetchone()
            claimed = c.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM allocation_record WHERE status = 'claimed'"
            ).fetchone()
            with_balance = c.execute(
                "SELECT COUNT(*) FROM artist_account WHERE balance > 0"
            ).fetchone()
            fees = c.execute("SELECT COALESCE(SUM(platform_fee), 0) FROM tip_event").fetchone()
        return EscrowStats(
            unclaimed_total=unclaimed[0],
            unclaimed_count=unclaimed[1],
            pending_verified_total=pending_verified[0],
            claimed_total=claimed[0],
            artists_with_balance=with_balance[0],
            platform_fee_total=fees[0],
        )
