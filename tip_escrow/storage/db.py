"""
Database connection management.

Provides SQLite connections and the transaction boundary used by every
multi-row ledger write.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from tip_escrow.core.errors import LedgerUnavailable

DEFAULT_DB_PATH = "tip_escrow.db"
BUSY_TIMEOUT_MS = 5000


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection is in autocommit mode; writes that must be atomic go
    through :func:`transaction`.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Open a connection and run the block inside ``BEGIN IMMEDIATE``.

    Commits on success. Any exception rolls back, leaving the ledger in its
    pre-operation state, and is re-raised. Lock contention and I/O failures
    surface as :class:`LedgerUnavailable` so callers can retry with the same
    idempotency key.

    Args:
        db_path: Path to SQLite database file

    Yields:
        Connection with an open write transaction
    """
    conn = get_connection(db_path)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise LedgerUnavailable(f"Could not start ledger transaction: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise LedgerUnavailable(f"Ledger transaction failed: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
    finally:
        conn.close()
