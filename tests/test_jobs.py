"""Tests for the collection jobs, end to end against a temporary database."""

import asyncio
import time
from datetime import date, timedelta

import pytest

from conftest import FakeAuthenticator, FakeCollector
from tepco_collector.authenticator import AuthErrorKind
from tepco_collector.credentials import CredentialManager
from tepco_collector.database import StorageError
from tepco_collector.jobs import CollectionJobs
from tepco_collector.models import CollectionLog, UpsertOutcome
from tepco_collector.reconciliation import ReconciliationEngine
from tepco_collector.repository import CollectionLogRepository, UsageRepository
from tepco_collector.token_store import TokenStore


def build_jobs(db_path, clock, collector, authenticator=None, password="secret", **kwargs) -> CollectionJobs:
    repository = UsageRepository(db_path, clock=clock)
    credentials = CredentialManager(
        token_store=TokenStore(db_path, clock=clock),
        authenticator=authenticator or FakeAuthenticator(),
        username="user@example.com",
        password=password,
        clock=clock,
    )
    return CollectionJobs(
        credentials=credentials,
        collector=collector,
        engine=ReconciliationEngine(repository, collector),
        repository=repository,
        log_repository=CollectionLogRepository(db_path, clock=clock),
        clock=clock,
        **kwargs,
    )


class TestDailyCollection:

    async def test_collects_yesterday_in_tokyo(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector)

        result = await jobs.collect_yesterday()

        assert result.status == "success"
        assert fake_collector.calls == [("token-1", "20240115")]

        stored = jobs.repository.get("20240115")
        assert stored.kwh_used == 12.5
        assert stored.charge_yen == 340
        assert stored.cumulative_kwh == 1000.5
        assert stored.cumulative_charge_yen == 27000
        assert stored.billing_status == "FINAL"
        assert stored.rate_category == "A"
        assert stored.collected_at == stored.last_updated

        log = jobs.log_repository.recent()[0]
        assert log.job_type == "daily"
        assert log.status == "success"
        assert log.dates_processed == ["20240115"]
        assert log.records_collected == 1

    async def test_tokyo_date_differs_from_utc(self, db_path, clock, fake_collector):
        # 2024-01-16 20:00 UTC is already the 17th in Tokyo
        clock.advance(hours=19)
        jobs = build_jobs(db_path, clock, fake_collector)

        await jobs.collect_yesterday()

        assert fake_collector.calls[0][1] == "20240116"

    async def test_recollecting_unchanged_day_is_a_no_op(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector)
        await jobs.collect_yesterday()
        first = jobs.repository.get("20240115")

        clock.advance(hours=1)
        result = await jobs.collect_yesterday()

        assert result.results[0].outcome == UpsertOutcome.UNCHANGED
        assert jobs.repository.get("20240115") == first

    async def test_result_carries_stored_row(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector)
        first = (await jobs.collect_yesterday()).record

        clock.advance(hours=1)
        result = await jobs.collect_yesterday()

        assert result.record == first
        assert result.record.collected_at == clock() - timedelta(hours=1)

    async def test_storage_runs_off_the_event_loop(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector)
        upsert = jobs.repository.upsert

        def slow_upsert(record):
            time.sleep(0.2)
            return upsert(record)

        jobs.repository.upsert = slow_upsert
        ticks = []

        async def ticker():
            while True:
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        try:
            result = await jobs.collect_yesterday()
        finally:
            task.cancel()

        assert result.status == "success"
        # The loop kept running while the upsert slept in its worker thread
        assert len(ticks) > 5

    async def test_auth_failure_logs_error_and_skips_collection(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector,
                          authenticator=FakeAuthenticator(error=AuthErrorKind.LOGIN_FORM_NOT_FOUND))

        result = await jobs.collect_yesterday()

        assert result.status == "error"
        assert result.auth_error == AuthErrorKind.LOGIN_FORM_NOT_FOUND
        assert fake_collector.calls == []
        log = jobs.log_repository.recent()[0]
        assert log.status == "error"
        assert log.error_details.startswith("login_form_not_found")

    async def test_missing_credentials(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector, password=None)

        result = await jobs.collect_yesterday()

        assert result.auth_error == AuthErrorKind.CREDENTIALS_NOT_CONFIGURED

    async def test_no_data_is_an_error(self, db_path, clock):
        collector = FakeCollector(clock, responses={"20240115": None})
        jobs = build_jobs(db_path, clock, collector)

        result = await jobs.collect_yesterday()

        assert result.status == "error"
        assert result.record is None
        assert jobs.repository.get("20240115") is None
        assert jobs.log_repository.recent()[0].status == "error"

    async def test_storage_error_is_logged_and_raised(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector)

        def broken_upsert(record):
            raise StorageError("disk full")

        jobs.repository.upsert = broken_upsert

        with pytest.raises(StorageError):
            await jobs.collect_yesterday()
        assert jobs.log_repository.recent()[0].error_details == "disk full"


class TestRangeCollection:

    async def test_collects_every_date_even_if_stored(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector)
        await jobs.collect_date(date(2024, 1, 11))

        result = await jobs.collect_range(date(2024, 1, 10), date(2024, 1, 12))

        assert [c[1] for c in fake_collector.calls] == ["20240111", "20240110", "20240111", "20240112"]
        assert result.status == "success"
        assert [r.outcome for r in result.results] == [
            UpsertOutcome.INSERTED, UpsertOutcome.UNCHANGED, UpsertOutcome.INSERTED,
        ]

    async def test_weekly_reconciliation_fills_gaps(self, db_path, clock):
        collector = FakeCollector(clock, responses={"20240110": None})
        jobs = build_jobs(db_path, clock, collector, reconciliation_window_days=7)
        await jobs.collect_date(date(2024, 1, 12))
        collector.calls.clear()

        result = await jobs.weekly_reconciliation()

        # Window is 20240109..20240115
        assert [c[1] for c in collector.calls] == ["20240109", "20240110", "20240111", "20240113",
                                                   "20240114", "20240115"]
        assert result.status == "partial"
        assert [r.usage_date for r in result.results if not r.success] == ["20240110"]

        log = jobs.log_repository.recent()[0]
        assert log.job_type == "weekly"
        assert log.status == "partial"
        assert log.records_collected == 5


class TestTokenCheck:

    async def test_refreshes_only_when_expired(self, db_path, clock, fake_collector):
        auth = FakeAuthenticator()
        jobs = build_jobs(db_path, clock, fake_collector, authenticator=auth)

        assert (await jobs.check_token()).message == "Token refreshed"
        assert (await jobs.check_token()).message == "Token still valid"
        clock.advance(hours=24)
        assert (await jobs.check_token()).message == "Token refreshed"
        assert auth.calls == 2


class TestLogCleanup:

    def seed_logs(self, jobs, clock):
        jobs.log_repository.insert(CollectionLog(job_type="daily", status="success"))
        clock.advance(days=120)
        jobs.log_repository.insert(CollectionLog(job_type="daily", status="success"))

    async def test_disabled_by_default_deletes_nothing(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector)
        self.seed_logs(jobs, clock)

        result = await jobs.cleanup_old_logs()

        assert "would remove 1" in result.message
        assert len(jobs.log_repository.recent()) == 2

    async def test_enabled_deletes_old_logs(self, db_path, clock, fake_collector):
        jobs = build_jobs(db_path, clock, fake_collector, log_retention_enabled=True)
        self.seed_logs(jobs, clock)

        result = await jobs.cleanup_old_logs()

        assert "removed 1" in result.message
        logs = jobs.log_repository.recent()
        assert [log.job_type for log in logs] == ["cleanup", "daily"]
