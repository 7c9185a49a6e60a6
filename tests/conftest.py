"""
Shared fixtures for the Sky Compare test suite.

Run with: python -m pytest tests/ -v
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from sky_compare.config import Settings
from sky_compare.geocoding import NotFound
from sky_compare.models import (
    CurrentConditions,
    HourlyPoint,
    Location,
    ProviderId,
    ProviderRecord,
    WeatherCondition,
)
from sky_compare.resilience import RetryConfig

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

BASE_TIME = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_record(
    provider: ProviderId,
    temperature: float = 18.0,
    condition: WeatherCondition = WeatherCondition.PARTLY_CLOUDY,
    hourly_temps: Optional[List[float]] = None,
    start: datetime = BASE_TIME,
) -> ProviderRecord:
    """A small but complete record with one hourly point per given temperature."""
    hourly = [
        HourlyPoint(
            time=start + timedelta(hours=i),
            temperature=t,
            condition=condition,
            precipitation_chance=0.1,
            humidity=0.5,
            wind_speed=3.0,
        )
        for i, t in enumerate(hourly_temps or [])
    ]
    return ProviderRecord(
        provider=provider,
        current=CurrentConditions(
            observed_at=start,
            temperature=temperature,
            apparent_temperature=temperature,
            condition=condition,
            condition_description=condition.description,
        ),
        hourly=hourly,
    )


class FakeProvider:
    """
    Stand-in adapter with a scripted outcome.

    Exactly one of `record`, `error` or `hang` drives fetch(); `calls`
    counts network-path invocations.
    """

    def __init__(
        self,
        provider_id: ProviderId,
        record: Optional[ProviderRecord] = None,
        error: Optional[BaseException] = None,
        hang: bool = False,
        applicable: bool = True,
        delay: float = 0.0,
    ):
        self.provider_id = provider_id
        self.attribution = f"Fake {provider_id.value}"
        self.record = record
        self.error = error
        self.hang = hang
        self.applicable = applicable
        self.delay = delay
        self.calls = 0
        self.locations: List[Location] = []

    def is_applicable(self, location: Location) -> bool:
        return self.applicable

    async def fetch(self, location: Location) -> ProviderRecord:
        self.calls += 1
        self.locations.append(location)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.record or make_record(self.provider_id)


class FakeGeocoder:
    """Records geocode calls and resolves names from a fixed table."""

    def __init__(self, places: Optional[dict] = None):
        self.places = places or {}
        self.calls: List[str] = []

    async def geocode(self, address: str) -> Location:
        self.calls.append(address)
        if address not in self.places:
            raise NotFound(f"No results for {address!r}")
        return self.places[address]

    async def reverse_geocode(self, latitude: float, longitude: float) -> Location:
        return Location(latitude, longitude)


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def fast_settings():
    """Settings with zero-delay retries so retry paths run instantly."""
    return Settings(
        owm_api_key="owm-key",
        tomorrow_api_key="tomorrow-key",
        weatherkit_token="wk-token",
        google_proxy_url="https://proxy.example.com",
        google_proxy_key="proxy-key",
        request_timeout_seconds=5.0,
        aggregate_timeout_seconds=None,
        retry=RetryConfig(max_retries=2, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter=False),
    )


@pytest.fixture
def san_francisco():
    return Location(
        latitude=37.7749,
        longitude=-122.4194,
        name="San Francisco, California, United States",
        timezone="America/Los_Angeles",
        country="United States",
        country_code="US",
        region="California",
        locality="San Francisco",
    )


@pytest.fixture
def clock():
    return FakeClock()
