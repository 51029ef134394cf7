"""
SQLite foundation: connections, schema, health.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import get_db_path, ensure_db_directory


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection. Transactions are managed explicitly by callers."""
    path = db_path or get_db_path()
    conn = sqlite3.connect(path, timeout=10.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA busy_timeout = 10000")
        conn.execute("PRAGMA foreign_keys = ON")
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    path = db_path or get_db_path()
    ensure_db_directory(path)

    with get_db(path) as conn:
        # WAL keeps readers (API) from blocking the reconciler's writes
        conn.execute("PRAGMA journal_mode = WAL")

        conn.execute('''
            CREATE TABLE IF NOT EXISTS stakes (
                escrow_id TEXT PRIMARY KEY,
                initializer_id TEXT,
                beneficiary_id TEXT,
                vault_id TEXT,
                stake_amount INTEGER CHECK (stake_amount IS NULL OR stake_amount > 0),
                attendee_contact TEXT NOT NULL,
                meeting_id TEXT NOT NULL,
                meeting_end_time TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'scheduled',
                last_confirmation_ref TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                lease_owner TEXT,
                lease_expires_at TEXT,
                release_attempted_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        # Append-only transition history
        conn.execute('''
            CREATE TABLE IF NOT EXISTS stake_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                escrow_id TEXT NOT NULL REFERENCES stakes(escrow_id),
                from_status TEXT,
                to_status TEXT NOT NULL,
                confirmation_ref TEXT,
                detail TEXT,
                ts TEXT NOT NULL
            )
        ''')

        conn.execute('CREATE INDEX IF NOT EXISTS idx_stakes_status_end ON stakes(status, meeting_end_time)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_stake_events_escrow ON stake_events(escrow_id, id)')

        # Nothing may delete from either table
        conn.execute('''
            CREATE TRIGGER IF NOT EXISTS stakes_no_delete BEFORE DELETE ON stakes
            BEGIN SELECT RAISE(ABORT, 'stake records are append-only'); END
        ''')
        conn.execute('''
            CREATE TRIGGER IF NOT EXISTS stake_events_no_delete BEFORE DELETE ON stake_events
            BEGIN SELECT RAISE(ABORT, 'stake events are append-only'); END
        ''')


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [row[0] for row in rows]
            required_tables = ['stakes', 'stake_events']
            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
