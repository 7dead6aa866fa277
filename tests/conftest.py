"""Shared fixtures: temporary database, fake clock and test doubles."""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import pytest

from tepco_collector.authenticator import AuthErrorKind, AuthResult
from tepco_collector.database import initialize_schema
from tepco_collector.models import format_usage_date
from tepco_collector.tepco_client import parse_daily_usage


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_payload(
    used_day: str = "20240115",
    power: str = "12.5",
    charge: str = "340",
    total_power: str = "1000.5",
    total_charge: str = "27000",
    billing_status: str = "FINAL",
    rate_category: str = "A",
) -> str:
    """A /kcx/billing/day response body as TEPCO sends it."""
    return json.dumps({
        "commonInfo": {"timestamp": "2024-01-16T01:00:00+09:00"},
        "billInfo": {
            "usedDay": used_day,
            "billingStatus": billing_status,
            "electricRateCategory": rate_category,
            "timezonePrice": None,
            "usedInfo": {
                "charge": charge,
                "power": power,
                "unit": "kWh",
                "beforeTotalInfo": {"charge": "26660", "power": "988.0", "unit": "kWh"},
                "currentTotalInfo": {"charge": total_charge, "power": total_power, "unit": "kWh"},
            },
        },
    })


class FakeCollector:
    """Serves canned responses per date.

    A date maps to a payload string, an exception instance to raise, or None
    for a non-success response. Unknown dates get a default payload.
    """

    def __init__(self, clock, responses=None):
        self.clock = clock
        self.responses = responses or {}
        self.calls = []

    async def collect(self, token, usage_date):
        if isinstance(usage_date, date):
            usage_date = format_usage_date(usage_date)
        self.calls.append((token, usage_date))

        response = self.responses.get(usage_date, make_payload(used_day=usage_date))
        if isinstance(response, Exception):
            raise response
        if response is None:
            return None
        return parse_daily_usage(response, self.clock())

    async def connect(self):
        pass

    async def close(self):
        pass


class FakeAuthenticator:
    """Hands out numbered tokens, optionally slowly, optionally failing."""

    def __init__(self, error: AuthErrorKind = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls = 0

    async def login(self, username, password):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            return AuthResult.failure(self.error, "login failed")
        return AuthResult.success(f"token-{self.calls}")


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 16, 1, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "tepco.db")
    initialize_schema(path)
    return path


@pytest.fixture
def payload():
    return make_payload


@pytest.fixture
def fake_collector(clock):
    return FakeCollector(clock)


@pytest.fixture
def fake_authenticator():
    return FakeAuthenticator()

