"""TEPCO Kurashi API client for daily electricity usage.

Fetches one finalized day of usage and charges from the kcx billing API and
normalizes it into a UsageRecord. Requests are authenticated with a bearer
token obtained through the browser login (see authenticator.py).
"""

import json
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Optional, Union

import httpx

from .models import TepcoDailyUsageResponse, UsageRecord, format_usage_date

logger = logging.getLogger("tepco-collector.tepco")

TEPCO_API_BASE = "https://kcx-api.tepco-z.com"
DAILY_USAGE_PATH = "/kcx/billing/day"

# The API only answers requests that look like they come from the Kurashi web app
DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36",
    "Accept": "application/json; charset=utf-8",
    "Content-Type": "application/json",
    "Referer": "https://www.app.kurashi.tepco.co.jp/",
}


class CollectionError(Exception):
    """Daily usage could not be fetched or parsed."""
    pass


def parse_daily_usage(raw_payload: str, collected_at: datetime) -> UsageRecord:
    """Parse a /kcx/billing/day response body into a UsageRecord.

    Args:
        raw_payload: Response body as received
        collected_at: Moment of collection, used for lastUpdated and collectedAt

    Raises:
        CollectionError: If the body is not JSON, lacks expected fields or
            carries non-finite amounts
    """
    try:
        data = json.loads(raw_payload)
    except json.JSONDecodeError as e:
        raise CollectionError(f"Response is not JSON: {e}") from e

    try:
        response = TepcoDailyUsageResponse.model_validate(data)
        return response.to_usage_record(raw_payload, collected_at)
    except (ValueError, OverflowError) as e:
        # ValidationError is a ValueError
        raise CollectionError(f"Malformed daily usage payload: {e}") from e


class TepcoClient:
    """Async client for the TEPCO daily usage API.

    Attributes:
        contract_num: Electricity contract number
        account_id: Kurashi TEPCO account ID
        contract_class: Contract class code ("02" for low-voltage residential)
    """

    def __init__(
        self,
        contract_num: str,
        account_id: str,
        contract_class: str = "02",
        base_url: str = TEPCO_API_BASE,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.contract_num = contract_num
        self.account_id = account_id
        self.contract_class = contract_class
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def connect(self):
        """Initialize HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=DEFAULT_HEADERS,
                transport=self._transport,
            )

    async def close(self):
        """Close HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _build_params(self, usage_date: str) -> dict:
        return {
            "contractNum": self.contract_num,
            "usedDay": usage_date,
            "contractClass": self.contract_class,
            "readOffset": "0",
            "accountId": self.account_id,
        }

    def _build_headers(self, token: str) -> dict:
        """Auth headers with a fresh tracking ID for this request."""
        tracking_id = str(uuid.uuid4())
        return {
            "Authorization": f"Bearer {token}",
            "X-API-Request-Id": tracking_id,
            "x-kcx-tracking-id": tracking_id,
        }

    async def collect(self, token: str, usage_date: Union[date, str]) -> Optional[UsageRecord]:
        """Fetch one day of usage.

        Args:
            token: Bearer token (without the "Bearer " prefix)
            usage_date: Day to fetch, as a date or YYYYMMDD string

        Returns:
            The normalized record, or None if TEPCO answered with a non-success status

        Raises:
            CollectionError: On transport failure, a malformed response, or data
                for a different date than requested
        """
        if isinstance(usage_date, date):
            usage_date = format_usage_date(usage_date)

        await self.connect()
        url = f"{self.base_url}{DAILY_USAGE_PATH}"

        try:
            resp = await self.client.get(
                url,
                params=self._build_params(usage_date),
                headers=self._build_headers(token),
            )
        except httpx.HTTPError as e:
            raise CollectionError(f"Request for {usage_date} failed: {type(e).__name__}: {e}") from e

        if not resp.is_success:
            logger.warning(f"TEPCO API HTTP {resp.status_code} for {usage_date}")
            return None

        record = parse_daily_usage(resp.text, self._clock())
        if record.usage_date != usage_date:
            raise CollectionError(f"Requested {usage_date} but TEPCO returned {record.usage_date}")
        logger.debug(f"Collected {record.usage_date}: {record.kwh_used} kWh, {record.charge_yen} yen")
        return record
