"""
SQLite connection management and schema bootstrap.

Tables:
  - daily_usage: one row per usage date (YYYYMMDD)
  - auth_sessions: the current TEPCO bearer token (at most one row)
  - collection_logs: outcome of each collection job run
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger("tepco-collector.database")


class StorageError(Exception):
    """Persistence failure in the local database."""
    pass


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    """Parse a timestamp written by to_db_timestamp."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite connection with dict-like rows.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection in autocommit mode; callers open transactions explicitly
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), isolation_level=None, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_schema(db_path: str) -> None:
    """Create all tables if they don't exist.

    Args:
        db_path: Path to SQLite database file

    Raises:
        StorageError: If the schema cannot be created
    """
    try:
        conn = get_connection(db_path)
    except (sqlite3.Error, OSError) as e:
        raise StorageError(f"Cannot open database {db_path}: {e}") from e

    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS daily_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                usage_date TEXT NOT NULL UNIQUE,
                kwh_used REAL NOT NULL,
                charge_yen INTEGER NOT NULL,
                cumulative_kwh REAL NOT NULL,
                cumulative_charge_yen INTEGER NOT NULL,
                billing_status TEXT,
                rate_category TEXT,
                last_updated TEXT NOT NULL,
                collected_at TEXT NOT NULL,
                raw_data TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS auth_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bearer_token TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS collection_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_type TEXT NOT NULL,
                status TEXT NOT NULL,
                message TEXT,
                dates_processed TEXT,
                records_collected INTEGER DEFAULT 0,
                records_updated INTEGER DEFAULT 0,
                execution_time_ms INTEGER,
                error_details TEXT,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_collection_logs_created_at ON collection_logs (created_at)"
        )
        logger.debug(f"Schema ready at {db_path}")
    except sqlite3.Error as e:
        raise StorageError(f"Schema creation failed: {e}") from e
    finally:
        conn.close()
