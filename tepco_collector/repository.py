"""
Repository for daily usage records and collection logs.

Daily usage rows are keyed by usage date. TEPCO occasionally corrects a day's
figures after it has been finalized, so re-collecting a date goes through
upsert(): unchanged values are a no-op, changed values overwrite the row.
"""

import calendar
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set

from .database import StorageError, from_db_timestamp, get_connection, to_db_timestamp
from .models import CollectionLog, MonthlyAggregate, UpsertOutcome, UsageRecord

logger = logging.getLogger("tepco-collector.repository")

USAGE_COLUMNS = """
    usage_date, kwh_used, charge_yen, cumulative_kwh, cumulative_charge_yen,
    billing_status, rate_category, last_updated, collected_at, raw_data
"""


def _row_to_usage_record(row: sqlite3.Row) -> UsageRecord:
    return UsageRecord(
        usage_date=row["usage_date"],
        kwh_used=float(row["kwh_used"]),
        charge_yen=int(row["charge_yen"]),
        cumulative_kwh=float(row["cumulative_kwh"]),
        cumulative_charge_yen=int(row["cumulative_charge_yen"]),
        billing_status=row["billing_status"] or "",
        rate_category=row["rate_category"] or "",
        last_updated=from_db_timestamp(row["last_updated"]),
        collected_at=from_db_timestamp(row["collected_at"]),
        raw_payload=row["raw_data"] or "",
    )


class UsageRepository:
    """Repository for daily electricity usage records."""

    def __init__(self, db_path: str, clock: Optional[Callable[[], datetime]] = None):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Returns the current time; defaults to UTC now
        """
        self.db_path = db_path
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

    def get(self, usage_date: str) -> Optional[UsageRecord]:
        """Get the stored record for a date (YYYYMMDD), or None."""
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {USAGE_COLUMNS} FROM daily_usage WHERE usage_date = ?",
                (usage_date,),
            ).fetchone()
            return _row_to_usage_record(row) if row else None
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read usage for {usage_date}: {e}") from e
        finally:
            conn.close()

    def get_range(self, from_date: str, to_date: str) -> List[UsageRecord]:
        """Get records between two dates (YYYYMMDD, inclusive), oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT {USAGE_COLUMNS} FROM daily_usage
                WHERE usage_date BETWEEN ? AND ?
                ORDER BY usage_date
                """,
                (from_date, to_date),
            ).fetchall()
            return [_row_to_usage_record(row) for row in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read usage range {from_date}-{to_date}: {e}") from e
        finally:
            conn.close()

    def existing_dates(self, from_date: str, to_date: str) -> Set[str]:
        """Get the set of stored usage dates between two dates (inclusive)."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT usage_date FROM daily_usage WHERE usage_date BETWEEN ? AND ?",
                (from_date, to_date),
            ).fetchall()
            return {row["usage_date"] for row in rows}
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read usage dates {from_date}-{to_date}: {e}") from e
        finally:
            conn.close()

    def upsert(self, record: UsageRecord) -> UpsertOutcome:
        """Insert a new record, or update the stored one if its values changed.

        The lookup and the write share one IMMEDIATE transaction, so two
        collections of the same date cannot both insert.

        Args:
            record: Freshly collected usage record

        Returns:
            What happened to the stored row

        Raises:
            StorageError: If the database operation fails
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT {USAGE_COLUMNS} FROM daily_usage WHERE usage_date = ?",
                (record.usage_date,),
            ).fetchone()

            if row is None:
                conn.execute(
                    f"INSERT INTO daily_usage ({USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.usage_date,
                        record.kwh_used,
                        record.charge_yen,
                        record.cumulative_kwh,
                        record.cumulative_charge_yen,
                        record.billing_status,
                        record.rate_category,
                        to_db_timestamp(record.last_updated),
                        to_db_timestamp(record.collected_at),
                        record.raw_payload,
                    ),
                )
                conn.execute("COMMIT")
                logger.info(f"Inserted new record for {record.usage_date}: {record.kwh_used} kWh")
                return UpsertOutcome.INSERTED

            existing = _row_to_usage_record(row)
            if not record.has_changes_from(existing):
                conn.execute("COMMIT")
                logger.debug(f"No changes for {record.usage_date}, skipping update")
                return UpsertOutcome.UNCHANGED

            # collected_at is left as first written
            conn.execute(
                """
                UPDATE daily_usage SET
                    kwh_used = ?, charge_yen = ?, cumulative_kwh = ?, cumulative_charge_yen = ?,
                    billing_status = ?, rate_category = ?, last_updated = ?, raw_data = ?
                WHERE usage_date = ?
                """,
                (
                    record.kwh_used,
                    record.charge_yen,
                    record.cumulative_kwh,
                    record.cumulative_charge_yen,
                    record.billing_status,
                    record.rate_category,
                    to_db_timestamp(self._clock()),
                    record.raw_payload,
                    record.usage_date,
                ),
            )
            conn.execute("COMMIT")
            logger.info(
                f"Updated {record.usage_date}: {existing.kwh_used} -> {record.kwh_used} kWh"
            )
            return UpsertOutcome.UPDATED

        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageError(f"Upsert failed for {record.usage_date}: {e}") from e
        finally:
            conn.close()

    def monthly_aggregate(self, year_month: str) -> MonthlyAggregate:
        """Sum usage and charges over the stored days of a month.

        Args:
            year_month: Month as YYYYMM

        Returns:
            Totals, all zero when no days are stored
        """
        year, month = int(year_month[:4]), int(year_month[4:6])
        last_day = calendar.monthrange(year, month)[1]
        records = self.get_range(f"{year_month}01", f"{year_month}{last_day:02d}")

        if not records:
            return MonthlyAggregate()

        total_kwh = sum(r.kwh_used for r in records)
        return MonthlyAggregate(
            total_kwh=total_kwh,
            total_charge=sum(r.charge_yen for r in records),
            days=len(records),
            average_kwh=total_kwh / len(records),
        )


class CollectionLogRepository:
    """Repository for collection job run history."""

    def __init__(self, db_path: str, clock: Optional[Callable[[], datetime]] = None):
        self.db_path = db_path
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

    def insert(self, log: CollectionLog) -> None:
        """Record one job run."""
        created_at = log.created_at or self._clock()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO collection_logs
                (job_type, status, message, dates_processed, records_collected,
                 records_updated, execution_time_ms, error_details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.job_type,
                    log.status,
                    log.message,
                    ",".join(log.dates_processed),
                    log.records_collected,
                    log.records_updated,
                    log.execution_time_ms,
                    log.error_details,
                    to_db_timestamp(created_at),
                ),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write collection log: {e}") from e
        finally:
            conn.close()

    def recent(self, limit: int = 50) -> List[CollectionLog]:
        """Get the most recent job runs, newest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT job_type, status, message, dates_processed, records_collected,
                       records_updated, execution_time_ms, error_details, created_at
                FROM collection_logs ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
            return [
                CollectionLog(
                    job_type=row["job_type"],
                    status=row["status"],
                    message=row["message"] or "",
                    dates_processed=[d for d in (row["dates_processed"] or "").split(",") if d],
                    records_collected=row["records_collected"] or 0,
                    records_updated=row["records_updated"] or 0,
                    execution_time_ms=row["execution_time_ms"] or 0,
                    error_details=row["error_details"],
                    created_at=from_db_timestamp(row["created_at"]),
                )
                for row in rows
            ]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read collection logs: {e}") from e
        finally:
            conn.close()

    def count_older_than(self, cutoff: datetime) -> int:
        """Count log rows created before the cutoff."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM collection_logs WHERE created_at < ?",
                (to_db_timestamp(cutoff),),
            ).fetchone()
            return row[0]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count collection logs: {e}") from e
        finally:
            conn.close()

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete log rows created before the cutoff. Returns rows deleted."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM collection_logs WHERE created_at < ?",
                (to_db_timestamp(cutoff),),
            )
            return cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"Failed to prune collection logs: {e}") from e
        finally:
            conn.close()
