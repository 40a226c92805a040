"""SQLite schema definitions for the reconciliation store.

Database: data/adsync.db (WAL mode)
Tables: push_performance, canonical_performance, processed_messages,
budget_usage, account_profiles, reconciliation_runs, consistency_checks
"""
import logging
import sqlite3
from pathlib import Path


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection with the pragmas every adsync connection uses."""
    db_path = str(db_path)
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=30000")
    return conn


def init_database(conn: sqlite3.Connection) -> None:
    """Create tables if they don't exist.

    Args:
        conn: Open SQLite connection
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    current_version = cursor.fetchone()[0] or 0

    if current_version < SCHEMA_VERSION:
        _apply_schema(conn)
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
        logger.info("Database schema initialized (version %s)", SCHEMA_VERSION)
    else:
        logger.debug("Database schema up to date (version %s)", current_version)


def _apply_schema(conn: sqlite3.Connection) -> None:
    # ad_group_id uses '' for "campaign level" so the UNIQUE key stays total.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS push_performance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            ad_group_id TEXT NOT NULL DEFAULT '',
            local_date TEXT NOT NULL,
            impressions INTEGER NOT NULL DEFAULT 0,
            clicks INTEGER NOT NULL DEFAULT 0,
            cost REAL NOT NULL DEFAULT 0,
            sales REAL NOT NULL DEFAULT 0,
            orders INTEGER NOT NULL DEFAULT 0,
            last_event_time TEXT,
            last_update TEXT NOT NULL,
            superseded INTEGER NOT NULL DEFAULT 0,
            superseded_at TEXT,
            UNIQUE(account_id, campaign_id, ad_group_id, local_date)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_push_account_date
        ON push_performance(account_id, local_date)
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS canonical_performance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            local_date TEXT NOT NULL,
            impressions INTEGER NOT NULL DEFAULT 0,
            clicks INTEGER NOT NULL DEFAULT 0,
            cost REAL NOT NULL DEFAULT 0,
            sales REAL NOT NULL DEFAULT 0,
            orders INTEGER NOT NULL DEFAULT 0,
            is_finalized INTEGER NOT NULL DEFAULT 0,
            finalized_at TEXT,
            last_update TEXT NOT NULL,
            UNIQUE(account_id, campaign_id, local_date)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_canonical_account_date
        ON canonical_performance(account_id, local_date)
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS processed_messages (
            message_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            dataset_category TEXT NOT NULL,
            local_date TEXT,
            outcome TEXT NOT NULL,
            processed_at TEXT NOT NULL
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS budget_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            local_date TEXT NOT NULL,
            budget_used REAL NOT NULL,
            budget_remaining REAL,
            event_time TEXT NOT NULL,
            last_update TEXT NOT NULL,
            UNIQUE(account_id, campaign_id, local_date)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS account_profiles (
            account_id TEXT PRIMARY KEY,
            marketplace TEXT NOT NULL,
            timezone_override TEXT,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reconciliation_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            local_date TEXT NOT NULL,
            status TEXT NOT NULL,
            written INTEGER NOT NULL DEFAULT 0,
            details TEXT,
            run_at TEXT NOT NULL
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_reconcile_account
        ON reconciliation_runs(account_id, run_at)
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS consistency_checks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            window_start TEXT NOT NULL,
            window_end TEXT NOT NULL,
            status TEXT NOT NULL,
            flagged_count INTEGER NOT NULL DEFAULT 0,
            result_json TEXT NOT NULL,
            checked_at TEXT NOT NULL
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_consistency_account
        ON consistency_checks(account_id, checked_at)
        """
    )
