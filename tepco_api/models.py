"""API request and response models."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tepco_collector.models import DateOutcome, UsageRecord, format_usage_date


class HealthStatus(BaseModel):
    """API health status."""

    status: str = "ok"


class DailyUsage(BaseModel):
    """One stored day of usage."""

    model_config = ConfigDict(populate_by_name=True)

    usage_date: str = Field(alias="usageDate")
    kwh_used: float = Field(alias="kwhUsed")
    charge_yen: int = Field(alias="chargeYen")
    cumulative_kwh: float = Field(alias="cumulativeKwh")
    cumulative_charge_yen: int = Field(alias="cumulativeChargeYen")
    billing_status: str = Field(default="", alias="billingStatus")
    rate_category: str = Field(default="", alias="rateCategory")
    last_updated: datetime = Field(alias="lastUpdated")
    collected_at: datetime = Field(alias="collectedAt")

    @classmethod
    def from_record(cls, record: UsageRecord) -> "DailyUsage":
        return cls.model_validate(record.model_dump(exclude={"raw_payload"}))


class MonthlySummary(BaseModel):
    """Totals over the stored days of one month."""

    model_config = ConfigDict(populate_by_name=True)

    year_month: str = Field(alias="yearMonth")
    total_kwh: float = Field(alias="totalKwh")
    total_charge: int = Field(alias="totalCharge")
    days: int
    average_kwh: float = Field(alias="averageKwh")


class GapReport(BaseModel):
    """Dates missing from storage in a trailing window."""

    model_config = ConfigDict(populate_by_name=True)

    window_start: str = Field(alias="windowStart")
    window_end: str = Field(alias="windowEnd")
    missing: List[str] = Field(default_factory=list)


class CollectResponse(BaseModel):
    """Result of a manual single-day collection."""

    success: bool
    date: str
    data: Optional[DailyUsage] = None


class BackfillRequest(BaseModel):
    """Date range for a manual backfill. Dates may be YYYYMMDD or ISO (YYYY-MM-DD)."""

    model_config = ConfigDict(populate_by_name=True)

    start_date: date = Field(alias="startDate")
    end_date: date = Field(alias="endDate")

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_compact_date(cls, value):
        if isinstance(value, str) and len(value) == 8 and value.isdigit():
            return f"{value[:4]}-{value[4:6]}-{value[6:]}"
        return value


class BackfillResponse(BaseModel):
    """Per-date results of a manual backfill."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status: str
    start_date: str = Field(alias="startDate")
    end_date: str = Field(alias="endDate")
    results: List[DateOutcome] = Field(default_factory=list)

    @classmethod
    def build(cls, start: date, end: date, status: str, results: List[DateOutcome]) -> "BackfillResponse":
        return cls(
            success=status != "error",
            status=status,
            start_date=format_usage_date(start),
            end_date=format_usage_date(end),
            results=results,
        )
