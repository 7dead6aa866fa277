"""Collection jobs run by the scheduler and the manual API endpoints.

Every run writes one row to collection_logs. Authentication and per-date
collection failures end the run with an error/partial status; storage
failures are logged and re-raised. SQLite calls run in worker threads so a
busy database never blocks the event loop.
"""

import asyncio
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from .authenticator import AuthErrorKind, AuthResult
from .credentials import CredentialManager
from .database import StorageError
from .models import (
    BackfillResult,
    CollectionLog,
    DateOutcome,
    UpsertOutcome,
    UsageRecord,
    format_usage_date,
)
from .reconciliation import ReconciliationEngine, enumerate_dates, trailing_window
from .repository import CollectionLogRepository, UsageRepository
from .tepco_client import CollectionError, TepcoClient

logger = logging.getLogger("tepco-collector.jobs")


class JobResult(BaseModel):
    """Outcome of one job run, as reported to callers."""

    job_type: str
    status: str  # success, partial, error
    message: str = ""
    auth_error: Optional[AuthErrorKind] = None
    results: List[DateOutcome] = Field(default_factory=list)
    record: Optional[UsageRecord] = None

    @property
    def ok(self) -> bool:
        return self.status != "error"


class CollectionJobs:
    """The collection tasks, sharing one token, client and database.

    Attributes:
        credentials: Get-or-authenticate for the bearer token
        collector: TEPCO API client
        engine: Gap detection and backfill
        repository: Daily usage storage
        log_repository: Collection run history
    """

    def __init__(
        self,
        credentials: CredentialManager,
        collector: TepcoClient,
        engine: ReconciliationEngine,
        repository: UsageRepository,
        log_repository: CollectionLogRepository,
        tz: str = "Asia/Tokyo",
        reconciliation_window_days: int = 30,
        log_retention_days: int = 90,
        log_retention_enabled: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.credentials = credentials
        self.collector = collector
        self.engine = engine
        self.repository = repository
        self.log_repository = log_repository
        self.tz = ZoneInfo(tz)
        self.reconciliation_window_days = reconciliation_window_days
        self.log_retention_days = log_retention_days
        self.log_retention_enabled = log_retention_enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def today(self) -> date:
        """Current date in TEPCO's timezone."""
        return self._clock().astimezone(self.tz).date()

    def yesterday(self) -> date:
        return self.today() - timedelta(days=1)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def collect_yesterday(self, job_type: str = "daily") -> JobResult:
        """Collect yesterday's finalized data. TEPCO never has today's data yet."""
        return await self.collect_date(self.yesterday(), job_type=job_type)

    async def collect_date(self, usage_date: date, job_type: str = "manual") -> JobResult:
        """Authenticate if needed, collect one date and store it."""
        started = time.monotonic()
        date_str = format_usage_date(usage_date)

        auth = await self.credentials.get_or_authenticate()
        if not auth.ok:
            return await self._auth_failed(job_type, auth, started, [date_str])

        try:
            try:
                record = await self.collector.collect(auth.token, usage_date)
                error = None if record else "No data returned"
            except CollectionError as e:
                record, error = None, str(e)

            if record is None:
                logger.error(f"Failed to collect data for {date_str}: {error}")
                outcome = DateOutcome(usage_date=date_str, success=False, error=error)
                await self._record(job_type, "error", started, [date_str], message=f"Failed to collect {date_str}", error_details=error)
                return JobResult(job_type=job_type, status="error", message=error, results=[outcome])

            upserted = await asyncio.to_thread(self.repository.upsert, record)
            logger.info(f"Data for {date_str} collected and stored: {record.kwh_used} kWh ({upserted.value})")
            outcome = DateOutcome(usage_date=date_str, success=True, outcome=upserted)
            await self._record(
                job_type,
                "success",
                started,
                [date_str],
                message=f"{date_str}: {upserted.value}",
                records_collected=1,
                records_updated=1 if upserted == UpsertOutcome.UPDATED else 0,
            )
            # Report the row as stored; an unchanged or updated row keeps its first collectedAt
            stored = await asyncio.to_thread(self.repository.get, date_str)
            return JobResult(job_type=job_type, status="success", results=[outcome], record=stored or record)

        except StorageError as e:
            await self._record(job_type, "error", started, [date_str], message="Storage failure", error_details=str(e))
            raise

    async def collect_range(self, start: date, end: date, job_type: str = "backfill") -> JobResult:
        """Collect every date in [start, end], whether or not it is already stored."""
        started = time.monotonic()
        dates = enumerate_dates(start, end)
        date_strs = [format_usage_date(d) for d in dates]

        auth = await self.credentials.get_or_authenticate()
        if not auth.ok:
            return await self._auth_failed(job_type, auth, started, date_strs)

        try:
            backfill = await self.engine.backfill(auth.token, dates)
        except StorageError as e:
            await self._record(job_type, "error", started, date_strs, message="Storage failure", error_details=str(e))
            raise
        return await self._finish_backfill(job_type, started, backfill)

    async def weekly_reconciliation(self) -> JobResult:
        """Backfill any dates missing from the trailing window."""
        started = time.monotonic()
        window_start, window_end = trailing_window(self.today(), self.reconciliation_window_days)
        logger.info(
            f"Checking {format_usage_date(window_start)}-{format_usage_date(window_end)} for missing dates"
        )

        auth = await self.credentials.get_or_authenticate()
        if not auth.ok:
            logger.warning("No valid token available for weekly backfill")
            return await self._auth_failed("weekly", auth, started, [])

        try:
            backfill = await self.engine.reconcile(auth.token, window_start, window_end)
        except StorageError as e:
            await self._record("weekly", "error", started, [], message="Storage failure", error_details=str(e))
            raise
        return await self._finish_backfill("weekly", started, backfill)

    async def check_token(self) -> JobResult:
        """Log in again if the stored token has expired."""
        started = time.monotonic()
        result = await self.credentials.refresh_if_expired()

        if result is None:
            return JobResult(job_type="token_check", status="success", message="Token still valid")
        if not result.ok:
            return await self._auth_failed("token_check", result, started, [])

        await self._record("token_check", "success", started, [], message="Token refreshed")
        return JobResult(job_type="token_check", status="success", message="Token refreshed")

    async def cleanup_old_logs(self) -> JobResult:
        """Prune collection logs past the retention period.

        Only reports what would be deleted unless log_retention_enabled is set.
        """
        started = time.monotonic()
        cutoff = self._clock() - timedelta(days=self.log_retention_days)

        if not self.log_retention_enabled:
            count = await asyncio.to_thread(self.log_repository.count_older_than, cutoff)
            message = f"Monthly cleanup: would remove {count} logs older than {self.log_retention_days} days"
            logger.info(f"{message} (LOG_RETENTION_ENABLED is off)")
            return JobResult(job_type="cleanup", status="success", message=message)

        deleted = await asyncio.to_thread(self.log_repository.delete_older_than, cutoff)
        message = f"Monthly cleanup: removed {deleted} logs older than {self.log_retention_days} days"
        logger.info(message)
        await self._record("cleanup", "success", started, [], message=message)
        return JobResult(job_type="cleanup", status="success", message=message)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _finish_backfill(self, job_type: str, started: float, backfill: BackfillResult) -> JobResult:
        succeeded = len(backfill.succeeded)
        failed = backfill.failed
        message = f"{succeeded} of {len(backfill.results)} dates collected"
        if failed:
            logger.warning(f"{job_type}: {message}, failed: {', '.join(r.usage_date for r in failed)}")
        else:
            logger.info(f"{job_type}: {message}")

        await self._record(
            job_type,
            backfill.status,
            started,
            [r.usage_date for r in backfill.results],
            message=message,
            records_collected=succeeded,
            records_updated=backfill.records_updated,
            error_details="; ".join(f"{r.usage_date}: {r.error}" for r in failed) or None,
        )
        return JobResult(job_type=job_type, status=backfill.status, message=message, results=backfill.results)

    async def _auth_failed(self, job_type: str, auth: AuthResult, started: float, dates: List[str]) -> JobResult:
        await self._record(
            job_type,
            "error",
            started,
            dates,
            message="Authentication failed",
            error_details=f"{auth.error.value}: {auth.detail}",
        )
        return JobResult(
            job_type=job_type,
            status="error",
            message=auth.detail,
            auth_error=auth.error,
        )

    async def _record(
        self,
        job_type: str,
        status: str,
        started: float,
        dates: List[str],
        message: str = "",
        records_collected: int = 0,
        records_updated: int = 0,
        error_details: Optional[str] = None,
    ):
        """Write the collection log row for a run."""
        await asyncio.to_thread(self.log_repository.insert, CollectionLog(
            job_type=job_type,
            status=status,
            message=message,
            dates_processed=dates,
            records_collected=records_collected,
            records_updated=records_updated,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            error_details=error_details,
        ))
