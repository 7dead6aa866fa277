"""Persistent store for the current TEPCO bearer token."""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Callable, Optional

from .database import StorageError, from_db_timestamp, get_connection, to_db_timestamp
from .models import CredentialRecord

logger = logging.getLogger("tepco-collector.token_store")


class TokenStore:
    """Holds at most one bearer token; storing a new one replaces the old.

    Attributes:
        db_path: Path to SQLite database file
    """

    def __init__(self, db_path: str, clock: Optional[Callable[[], datetime]] = None):
        self.db_path = db_path
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

    def store(self, token: str, expires_at: datetime):
        """Replace all stored tokens with a new one."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM auth_sessions")
            conn.execute(
                "INSERT INTO auth_sessions (bearer_token, expires_at, created_at) VALUES (?, ?, ?)",
                (token, to_db_timestamp(expires_at), to_db_timestamp(self._clock())),
            )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageError(f"Failed to store token: {e}") from e
        finally:
            conn.close()

        logger.info(f"Token stored (expires {expires_at.strftime('%Y-%m-%d %H:%M:%S %Z')})")

    def get_valid(self) -> Optional[CredentialRecord]:
        """Get the newest token whose expiry is still in the future, or None."""
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT bearer_token, expires_at, created_at FROM auth_sessions
                WHERE expires_at > ?
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (to_db_timestamp(self._clock()),),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read token: {e}") from e
        finally:
            conn.close()

        if row is None:
            return None
        return CredentialRecord(
            token=row["bearer_token"],
            expires_at=from_db_timestamp(row["expires_at"]),
            created_at=from_db_timestamp(row["created_at"]),
        )

    def is_expired(self) -> bool:
        """Check if there is no valid token."""
        return self.get_valid() is None

    def get_expiry(self) -> Optional[datetime]:
        """Get the expiry of the newest stored token, valid or not."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT expires_at FROM auth_sessions ORDER BY created_at DESC, id DESC LIMIT 1"
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read token expiry: {e}") from e
        finally:
            conn.close()
        return from_db_timestamp(row["expires_at"]) if row else None

    def clear(self):
        """Remove all stored tokens."""
        conn = self._connect()
        try:
            conn.execute("DELETE FROM auth_sessions")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to clear tokens: {e}") from e
        finally:
            conn.close()
        logger.info("All tokens cleared")
