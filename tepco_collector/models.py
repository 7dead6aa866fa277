"""Data models for TEPCO usage records and API responses."""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


USAGE_DATE_FORMAT = "%Y%m%d"


def format_usage_date(value: date) -> str:
    """Format a calendar date as the YYYYMMDD usage key."""
    return value.strftime(USAGE_DATE_FORMAT)


def parse_usage_date(value: str) -> date:
    """Parse a YYYYMMDD usage key into a calendar date."""
    return datetime.strptime(value, USAGE_DATE_FORMAT).date()


# =============================================================================
# Stored Models
# =============================================================================

class UsageRecord(BaseModel):
    """One day of electricity usage as stored locally."""

    model_config = ConfigDict(populate_by_name=True)

    usage_date: str = Field(alias="usageDate")  # YYYYMMDD
    kwh_used: float = Field(alias="kwhUsed")
    charge_yen: int = Field(alias="chargeYen")
    cumulative_kwh: float = Field(alias="cumulativeKwh")
    cumulative_charge_yen: int = Field(alias="cumulativeChargeYen")
    billing_status: str = Field(default="", alias="billingStatus")
    rate_category: str = Field(default="", alias="rateCategory")
    last_updated: datetime = Field(alias="lastUpdated")
    collected_at: datetime = Field(alias="collectedAt")
    raw_payload: str = Field(default="", alias="rawPayload")

    @property
    def monitored_values(self) -> tuple:
        """Values whose change marks the record as corrected by TEPCO."""
        return (
            self.kwh_used,
            self.charge_yen,
            self.cumulative_kwh,
            self.cumulative_charge_yen,
        )

    def has_changes_from(self, other: "UsageRecord") -> bool:
        """Check if any monitored value differs from another record."""
        return self.monitored_values != other.monitored_values


class CredentialRecord(BaseModel):
    """A stored TEPCO bearer token."""

    token: str
    expires_at: datetime
    created_at: datetime


class CollectionLog(BaseModel):
    """Outcome of one collection job run."""

    model_config = ConfigDict(populate_by_name=True)

    job_type: str = Field(alias="jobType")  # daily, token_check, weekly, backfill, manual, cleanup
    status: str  # success, partial, error
    message: str = ""
    dates_processed: List[str] = Field(default_factory=list, alias="datesProcessed")
    records_collected: int = Field(default=0, alias="recordsCollected")
    records_updated: int = Field(default=0, alias="recordsUpdated")
    execution_time_ms: int = Field(default=0, alias="executionTimeMs")
    error_details: Optional[str] = Field(default=None, alias="errorDetails")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


class UpsertOutcome(str, Enum):
    """What an upsert did to the stored row."""

    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class DateOutcome(BaseModel):
    """Collection result for a single date."""

    model_config = ConfigDict(populate_by_name=True)

    usage_date: str = Field(alias="date")
    success: bool
    outcome: Optional[UpsertOutcome] = None
    error: Optional[str] = None


class BackfillResult(BaseModel):
    """Per-date results of a multi-date collection, in request order."""

    results: List[DateOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> List[DateOutcome]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[DateOutcome]:
        return [r for r in self.results if not r.success]

    @property
    def records_updated(self) -> int:
        return sum(1 for r in self.results if r.outcome == UpsertOutcome.UPDATED)

    @property
    def status(self) -> str:
        """success when every date succeeded, partial when some did, error otherwise."""
        if not self.failed:
            return "success"
        if self.succeeded:
            return "partial"
        return "error"


class MonthlyAggregate(BaseModel):
    """Totals over the stored days of one month."""

    model_config = ConfigDict(populate_by_name=True)

    total_kwh: float = Field(default=0.0, alias="totalKwh")
    total_charge: int = Field(default=0, alias="totalCharge")
    days: int = 0
    average_kwh: float = Field(default=0.0, alias="averageKwh")


# =============================================================================
# TEPCO API Response Models
# =============================================================================

class TepcoTotalInfo(BaseModel):
    """Running total block (beforeTotalInfo / currentTotalInfo)."""

    model_config = ConfigDict(allow_inf_nan=False)

    charge: float
    power: float
    unit: str = "kWh"


class TepcoUsedInfo(BaseModel):
    """Daily usage block. Amounts come as strings from the API."""

    model_config = ConfigDict(allow_inf_nan=False)

    charge: float
    power: float
    unit: str = "kWh"
    beforeTotalInfo: Optional[TepcoTotalInfo] = None
    currentTotalInfo: TepcoTotalInfo


class TepcoBillInfo(BaseModel):
    """Billing section of the daily usage response."""

    usedDay: str = Field(pattern=r"^\d{8}$")  # YYYYMMDD
    billingStatus: str
    electricRateCategory: str
    timezonePrice: Optional[str] = None
    usedInfo: TepcoUsedInfo


class TepcoCommonInfo(BaseModel):
    timestamp: Optional[str] = None


class TepcoDailyUsageResponse(BaseModel):
    """Response of GET /kcx/billing/day."""

    commonInfo: Optional[TepcoCommonInfo] = None
    billInfo: TepcoBillInfo

    def to_usage_record(self, raw_payload: str, collected_at: datetime) -> UsageRecord:
        """Normalize into a UsageRecord collected at the given moment."""
        used = self.billInfo.usedInfo
        return UsageRecord(
            usage_date=self.billInfo.usedDay,
            kwh_used=used.power,
            charge_yen=int(round(used.charge)),
            cumulative_kwh=used.currentTotalInfo.power,
            cumulative_charge_yen=int(round(used.currentTotalInfo.charge)),
            billing_status=self.billInfo.billingStatus,
            rate_category=self.billInfo.electricRateCategory,
            last_updated=collected_at,
            collected_at=collected_at,
            raw_payload=raw_payload,
        )
