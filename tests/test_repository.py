"""Tests for usage and collection log storage."""

from datetime import timedelta

import pytest

from tepco_collector.database import StorageError, initialize_schema
from tepco_collector.models import CollectionLog, UpsertOutcome
from tepco_collector.repository import CollectionLogRepository, UsageRepository
from tepco_collector.tepco_client import parse_daily_usage


def record_for(payload, clock, **kwargs):
    return parse_daily_usage(payload(**kwargs), clock())


class TestUsageUpsert:

    def test_insert_then_unchanged(self, db_path, clock, payload):
        repo = UsageRepository(db_path, clock=clock)
        first = record_for(payload, clock)

        assert repo.upsert(first) == UpsertOutcome.INSERTED

        clock.advance(days=1)
        again = record_for(payload, clock)
        assert repo.upsert(again) == UpsertOutcome.UNCHANGED

        stored = repo.get("20240115")
        assert stored.collected_at == first.collected_at
        assert stored.last_updated == first.last_updated

    def test_changed_values_overwrite_but_keep_collected_at(self, db_path, clock, payload):
        repo = UsageRepository(db_path, clock=clock)
        first = record_for(payload, clock)
        repo.upsert(first)

        clock.advance(days=2)
        corrected = record_for(payload, clock, power="13.1", charge="356")
        assert repo.upsert(corrected) == UpsertOutcome.UPDATED

        stored = repo.get("20240115")
        assert stored.kwh_used == 13.1
        assert stored.charge_yen == 356
        assert stored.collected_at == first.collected_at
        assert stored.last_updated == clock()
        assert stored.last_updated > stored.collected_at

    def test_billing_status_alone_is_not_a_change(self, db_path, clock, payload):
        repo = UsageRepository(db_path, clock=clock)
        repo.upsert(record_for(payload, clock, billing_status="PRELIM"))

        assert repo.upsert(record_for(payload, clock, billing_status="FINAL")) == UpsertOutcome.UNCHANGED
        assert repo.get("20240115").billing_status == "PRELIM"

    def test_one_row_per_date(self, db_path, clock, payload):
        repo = UsageRepository(db_path, clock=clock)
        for power in ("1.0", "2.0", "2.0", "3.0"):
            repo.upsert(record_for(payload, clock, power=power))

        rows = repo.get_range("20240101", "20240131")
        assert len(rows) == 1
        assert rows[0].kwh_used == 3.0

    def test_get_missing_date(self, db_path, clock):
        assert UsageRepository(db_path, clock=clock).get("20240101") is None


class TestUsageQueries:

    @pytest.fixture
    def repo(self, db_path, clock, payload):
        repo = UsageRepository(db_path, clock=clock)
        for day, power, charge in (("20240103", "10.0", "300"), ("20240101", "8.0", "250"),
                                   ("20240131", "12.0", "350"), ("20240201", "5.0", "150")):
            repo.upsert(record_for(payload, clock, used_day=day, power=power, charge=charge))
        return repo

    def test_range_is_ascending_and_inclusive(self, repo):
        dates = [r.usage_date for r in repo.get_range("20240101", "20240131")]
        assert dates == ["20240101", "20240103", "20240131"]

    def test_existing_dates(self, repo):
        assert repo.existing_dates("20240102", "20240201") == {"20240103", "20240131", "20240201"}

    def test_monthly_aggregate(self, repo):
        aggregate = repo.monthly_aggregate("202401")

        assert aggregate.days == 3
        assert aggregate.total_kwh == pytest.approx(30.0)
        assert aggregate.total_charge == 900
        assert aggregate.average_kwh == pytest.approx(10.0)

    def test_monthly_aggregate_empty_month(self, repo):
        aggregate = repo.monthly_aggregate("202312")

        assert aggregate.days == 0
        assert aggregate.total_kwh == 0.0


class TestCollectionLogs:

    def test_insert_and_recent(self, db_path, clock):
        logs = CollectionLogRepository(db_path, clock=clock)
        logs.insert(CollectionLog(job_type="daily", status="success", dates_processed=["20240115"],
                                  records_collected=1))
        clock.advance(minutes=1)
        logs.insert(CollectionLog(job_type="weekly", status="partial", error_details="20240110: boom"))

        recent = logs.recent()
        assert [log.job_type for log in recent] == ["weekly", "daily"]
        assert recent[1].dates_processed == ["20240115"]
        assert recent[1].records_collected == 1
        assert recent[0].dates_processed == []
        assert recent[0].created_at == clock()

    def test_count_and_delete_older_than(self, db_path, clock):
        logs = CollectionLogRepository(db_path, clock=clock)
        logs.insert(CollectionLog(job_type="daily", status="success"))
        clock.advance(days=100)
        logs.insert(CollectionLog(job_type="daily", status="success"))

        cutoff = clock() - timedelta(days=90)
        assert logs.count_older_than(cutoff) == 1
        assert logs.delete_older_than(cutoff) == 1
        assert len(logs.recent()) == 1


def test_unopenable_database_raises_storage_error(tmp_path, clock, payload):
    # A directory where the database file should be
    bad_path = tmp_path / "db"
    bad_path.mkdir()

    with pytest.raises(StorageError):
        initialize_schema(str(bad_path))
    with pytest.raises(StorageError):
        UsageRepository(str(bad_path), clock=clock).upsert(record_for(payload, clock))
