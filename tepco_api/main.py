"""TEPCO Usage API."""

import asyncio
import logging
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tepco_collector.authenticator import AuthErrorKind
from tepco_collector.config import settings
from tepco_collector.database import StorageError
from tepco_collector.main import CollectorService, configure_logging
from tepco_collector.models import format_usage_date
from tepco_collector.reconciliation import trailing_window

from .models import (
    BackfillRequest,
    BackfillResponse,
    CollectResponse,
    DailyUsage,
    GapReport,
    HealthStatus,
    MonthlySummary,
)

configure_logging(settings.log_level)
logger = logging.getLogger("tepco-api")

DATE_PATTERN = r"^\d{8}$"
MONTH_PATTERN = r"^\d{6}$"

# Create FastAPI app
app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="REST API for TEPCO daily electricity usage",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[CollectorService] = None


def get_service() -> CollectorService:
    """The running collector service."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Collector service not started")
    return _service


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


def _auth_status_code(kind: Optional[AuthErrorKind]) -> int:
    if kind == AuthErrorKind.CREDENTIALS_NOT_CONFIGURED:
        return 500
    return 502


# =============================================================================
# Health & Info Endpoints
# =============================================================================

@app.get("/", tags=["Info"])
async def root():
    """API root - returns basic info."""
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "docs": "/docs",
    }


@app.get("/api/health", response_model=HealthStatus, tags=["Info"])
async def health():
    """Check API health status."""
    return HealthStatus()


# =============================================================================
# Usage Endpoints
# =============================================================================

@app.get("/api/electric/daily/range/{from_date}/{to_date}", response_model=List[DailyUsage], tags=["Usage"])
async def get_daily_range(
    from_date: str = Path(pattern=DATE_PATTERN, description="First date, YYYYMMDD"),
    to_date: str = Path(pattern=DATE_PATTERN, description="Last date, YYYYMMDD"),
    service: CollectorService = Depends(get_service),
):
    """Get stored daily usage between two dates (inclusive), oldest first."""
    records = await asyncio.to_thread(service.repository.get_range, from_date, to_date)
    return [DailyUsage.from_record(r) for r in records]


@app.get("/api/electric/daily/{usage_date}", response_model=DailyUsage, tags=["Usage"])
async def get_daily(
    usage_date: str = Path(pattern=DATE_PATTERN, description="Date, YYYYMMDD"),
    service: CollectorService = Depends(get_service),
):
    """Get stored usage for one date."""
    record = await asyncio.to_thread(service.repository.get, usage_date)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No usage stored for {usage_date}")
    return DailyUsage.from_record(record)


@app.get("/api/electric/monthly/{year_month}", response_model=MonthlySummary, tags=["Usage"])
async def get_monthly(
    year_month: str = Path(pattern=MONTH_PATTERN, description="Month, YYYYMM"),
    service: CollectorService = Depends(get_service),
):
    """Get usage and charge totals for a month."""
    if not 1 <= int(year_month[4:]) <= 12:
        raise HTTPException(status_code=400, detail=f"Invalid month: {year_month}")
    aggregate = await asyncio.to_thread(service.repository.monthly_aggregate, year_month)
    return MonthlySummary(
        year_month=year_month,
        total_kwh=aggregate.total_kwh,
        total_charge=aggregate.total_charge,
        days=aggregate.days,
        average_kwh=aggregate.average_kwh,
    )


@app.get("/api/electric/gaps", response_model=GapReport, tags=["Usage"])
async def get_gaps(
    days: int = Query(default=30, ge=1, le=366, description="Trailing window size in days"),
    service: CollectorService = Depends(get_service),
):
    """List dates missing from storage in the trailing window ending yesterday."""
    window_start, window_end = trailing_window(service.jobs.today(), days)
    gaps = await asyncio.to_thread(service.engine.find_gaps, window_start, window_end)
    return GapReport(
        window_start=format_usage_date(window_start),
        window_end=format_usage_date(window_end),
        missing=[format_usage_date(d) for d in gaps],
    )


# =============================================================================
# Manual Collection Endpoints
# =============================================================================

@app.post("/api/electric/collect/yesterday", response_model=CollectResponse, tags=["Collection"])
async def collect_yesterday(service: CollectorService = Depends(get_service)):
    """Collect yesterday's usage now, logging in first if needed."""
    result = await service.jobs.collect_yesterday(job_type="manual")
    usage_date = result.results[0].usage_date if result.results else format_usage_date(service.jobs.yesterday())

    if result.auth_error is not None:
        raise HTTPException(
            status_code=_auth_status_code(result.auth_error),
            detail=f"Authentication failed: {result.auth_error.value}",
        )
    if result.record is None:
        raise HTTPException(status_code=502, detail=f"Failed to collect data for {usage_date}")

    return CollectResponse(success=True, date=usage_date, data=DailyUsage.from_record(result.record))


@app.post("/api/electric/collect/backfill", response_model=BackfillResponse, tags=["Collection"])
async def collect_backfill(
    request: BackfillRequest = Body(...),
    service: CollectorService = Depends(get_service),
):
    """Collect every date in a range, whether or not it is already stored."""
    if request.start_date > request.end_date:
        raise HTTPException(status_code=400, detail="startDate must not be after endDate")

    result = await service.jobs.collect_range(request.start_date, request.end_date, job_type="backfill")
    if result.auth_error is not None:
        raise HTTPException(
            status_code=_auth_status_code(result.auth_error),
            detail=f"Authentication failed: {result.auth_error.value}",
        )

    return BackfillResponse.build(request.start_date, request.end_date, result.status, result.results)


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup():
    """Run on startup."""
    global _service
    logger.info(f"Starting {settings.api_title} v{settings.api_version}")
    _service = CollectorService.build(settings)
    await _service.start()


@app.on_event("shutdown")
async def shutdown():
    """Run on shutdown."""
    logger.info("Shutting down API")
    if _service:
        await _service.stop()
