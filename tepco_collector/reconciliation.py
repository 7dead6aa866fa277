"""Gap detection and backfill of daily usage history."""

import asyncio
import logging
from datetime import date, timedelta
from typing import Iterable, List, Tuple

from .models import BackfillResult, DateOutcome, format_usage_date
from .repository import UsageRepository
from .tepco_client import CollectionError, TepcoClient

logger = logging.getLogger("tepco-collector.reconciliation")


def enumerate_dates(start: date, end: date) -> List[date]:
    """Every calendar date from start to end, inclusive. Empty if start > end."""
    days = (end - start).days
    return [start + timedelta(days=offset) for offset in range(days + 1)]


def trailing_window(today: date, days: int) -> Tuple[date, date]:
    """The `days` finalized dates before today.

    TEPCO finalizes a day only after it ends, so the window stops at yesterday.
    """
    return today - timedelta(days=days), today - timedelta(days=1)


class ReconciliationEngine:
    """Finds dates missing from storage and collects them.

    Attributes:
        repository: Daily usage storage
        collector: TEPCO API client
    """

    def __init__(self, repository: UsageRepository, collector: TepcoClient):
        self.repository = repository
        self.collector = collector

    def find_gaps(self, window_start: date, window_end: date) -> List[date]:
        """Dates in [window_start, window_end] with no stored record, ascending."""
        dates = enumerate_dates(window_start, window_end)
        if not dates:
            return []

        existing = self.repository.existing_dates(
            format_usage_date(window_start), format_usage_date(window_end)
        )
        return [d for d in dates if format_usage_date(d) not in existing]

    async def backfill(self, token: str, dates: Iterable[date]) -> BackfillResult:
        """Collect and store each date in order.

        A failed date is logged and skipped; it stays a gap for the next
        reconciliation run. Storage failures are not caught.
        """
        result = BackfillResult()

        for usage_date in dates:
            date_str = format_usage_date(usage_date)
            try:
                record = await self.collector.collect(token, usage_date)
            except CollectionError as e:
                logger.error(f"Failed to backfill data for {date_str}: {e}")
                result.results.append(DateOutcome(usage_date=date_str, success=False, error=str(e)))
                continue

            if record is None:
                logger.warning(f"No data returned for {date_str}, leaving as gap")
                result.results.append(
                    DateOutcome(usage_date=date_str, success=False, error="No data returned")
                )
                continue

            outcome = await asyncio.to_thread(self.repository.upsert, record)
            logger.info(f"Backfilled data for {date_str}: {record.kwh_used} kWh ({outcome.value})")
            result.results.append(DateOutcome(usage_date=date_str, success=True, outcome=outcome))

        return result

    async def reconcile(self, token: str, window_start: date, window_end: date) -> BackfillResult:
        """Find gaps in the window and backfill them."""
        gaps = await asyncio.to_thread(self.find_gaps, window_start, window_end)
        if not gaps:
            logger.info("No missing dates found, backfill not needed")
            return BackfillResult()

        logger.info(f"Found {len(gaps)} missing dates, attempting backfill...")
        return await self.backfill(token, gaps)
