"""
Tests for the concurrent aggregator.

These tests verify that:
1. One provider's failure or slowness never hides another's result
2. Every applicable provider ends up in exactly one of records/failures
3. Cached records are reused inside the TTL window
4. The locality fallback runs once, and only when nothing succeeded
5. The aggregate timeout cancels stragglers and keeps finished results
6. fetch_one updates a single provider's entry
7. Cancelling the caller cancels every in-flight provider task

Run with: python -m pytest tests/test_aggregator.py -v
"""

import asyncio
import logging
import time

import httpx
import pytest

from sky_compare.aggregator import WeatherAggregator
from sky_compare.cache_manager import WeatherCache
from sky_compare.config import Settings
from sky_compare.geocoding import OpenMeteoGeocoder
from sky_compare.models import Location, ProviderFailure, ProviderId, WeatherSnapshot
from sky_compare.resilience import FailureKind, NoProvidersSucceeded, ProviderError

from conftest import FakeGeocoder, FakeProvider, make_record

logger = logging.getLogger(__name__)

SETTINGS = Settings(aggregate_timeout_seconds=None)


def unauthorized(name: str) -> ProviderError:
    return ProviderError(FailureKind.UNAUTHORIZED, "HTTP 401", name, 401)


def unavailable(name: str) -> ProviderError:
    return ProviderError(FailureKind.UNAVAILABLE, "HTTP 503", name, 503)


class BroaderOnlyProvider(FakeProvider):
    """Fails for every location except the one it is told to serve."""

    def __init__(self, provider_id: ProviderId, serves: Location):
        super().__init__(provider_id)
        self.serves = serves

    async def fetch(self, location: Location):
        self.calls += 1
        self.locations.append(location)
        if location.id != self.serves.id:
            raise unavailable(self.provider_id.value)
        return make_record(self.provider_id)


@pytest.fixture
def neighborhood():
    """A precise point whose providers all fail, with a city to fall back to."""
    return Location(
        latitude=37.7599,
        longitude=-122.4148,
        name="Mission District, San Francisco",
        timezone="America/Los_Angeles",
        country_code="US",
        locality="San Francisco",
    )


class TestFanOut:
    """Concurrent fetch with partial failure."""

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successes(self, san_francisco):
        logger.info("[TEST] Testing partial failure with a slow provider...")
        providers = [
            FakeProvider(ProviderId.WEATHERKIT, error=unauthorized("weatherkit")),
            FakeProvider(ProviderId.GOOGLE, record=make_record(ProviderId.GOOGLE, temperature=16.0)),
            FakeProvider(ProviderId.NWS, record=make_record(ProviderId.NWS, temperature=17.0)),
            FakeProvider(ProviderId.OPEN_WEATHER_MAP, hang=True),
            FakeProvider(ProviderId.OPEN_METEO, record=make_record(ProviderId.OPEN_METEO, temperature=18.0)),
        ]
        aggregator = WeatherAggregator(providers, settings=SETTINGS)

        snapshot = await aggregator.fetch_all(san_francisco, timeout=0.3)
        logger.info(f"[TEST] Sources: {snapshot.available_sources}, failures: {snapshot.failures}")

        assert snapshot.available_sources == [ProviderId.GOOGLE, ProviderId.NWS, ProviderId.OPEN_METEO]
        assert snapshot.primary_source == ProviderId.GOOGLE
        assert snapshot.failures[ProviderId.WEATHERKIT].kind == FailureKind.UNAUTHORIZED
        assert snapshot.failures[ProviderId.OPEN_WEATHER_MAP].kind == FailureKind.TIMEOUT
        assert "Cancelled after 0.3s" in snapshot.failures[ProviderId.OPEN_WEATHER_MAP].message

    @pytest.mark.asyncio
    async def test_every_applicable_provider_accounted_for_once(self, san_francisco):
        providers = [
            FakeProvider(ProviderId.WEATHERKIT, applicable=False),
            FakeProvider(ProviderId.GOOGLE, error=unavailable("google")),
            FakeProvider(ProviderId.NWS),
            FakeProvider(ProviderId.TOMORROW_IO, error=RuntimeError("adapter bug")),
            FakeProvider(ProviderId.OPEN_METEO),
        ]
        snapshot = await WeatherAggregator(providers, settings=SETTINGS).fetch_all(san_francisco)

        applicable = {p.provider_id for p in providers if p.applicable}
        assert set(snapshot.records) | set(snapshot.failures) == applicable
        assert set(snapshot.records).isdisjoint(snapshot.failures)
        assert ProviderId.WEATHERKIT not in snapshot.failures
        assert providers[0].calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failure(self, san_francisco):
        providers = [
            FakeProvider(ProviderId.NWS, error=KeyError("properties")),
            FakeProvider(ProviderId.OPEN_METEO),
        ]
        snapshot = await WeatherAggregator(providers, settings=SETTINGS).fetch_all(san_francisco)
        assert snapshot.failures[ProviderId.NWS].kind == FailureKind.MALFORMED_RESPONSE
        assert snapshot.primary_source == ProviderId.OPEN_METEO

    @pytest.mark.asyncio
    async def test_providers_run_concurrently(self, san_francisco):
        providers = [FakeProvider(pid, delay=0.2) for pid in (ProviderId.NWS, ProviderId.GOOGLE, ProviderId.OPEN_METEO)]
        start = time.monotonic()
        await WeatherAggregator(providers, settings=SETTINGS).fetch_all(san_francisco)
        elapsed = time.monotonic() - start
        logger.info(f"[TEST] Three 0.2s providers finished in {elapsed:.2f}s")
        assert elapsed < 0.5

    @pytest.mark.asyncio
    async def test_no_applicable_providers_gives_empty_snapshot(self, san_francisco):
        providers = [FakeProvider(ProviderId.NWS, applicable=False)]
        snapshot = await WeatherAggregator(providers, settings=SETTINGS).fetch_all(san_francisco)
        assert snapshot.is_empty
        assert snapshot.failures == {}

    def test_duplicate_providers_rejected(self):
        with pytest.raises(ValueError):
            WeatherAggregator([FakeProvider(ProviderId.NWS), FakeProvider(ProviderId.NWS)], settings=SETTINGS)


class TestCaching:

    @pytest.mark.asyncio
    async def test_second_fetch_within_ttl_is_served_from_cache(self, san_francisco):
        logger.info("[TEST] Testing cache reuse across fetch_all calls...")
        providers = [FakeProvider(ProviderId.NWS), FakeProvider(ProviderId.OPEN_METEO)]
        aggregator = WeatherAggregator(providers, settings=SETTINGS)

        first = await aggregator.fetch_all(san_francisco)
        second = await aggregator.fetch_all(san_francisco)

        assert [p.calls for p in providers] == [1, 1]
        assert first.records == second.records
        assert aggregator.cache.stats()["hits"] == 2

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, san_francisco):
        provider = FakeProvider(ProviderId.NWS, error=unavailable("nws"))
        aggregator = WeatherAggregator([provider], settings=SETTINGS)
        await aggregator.fetch_all(san_francisco)
        await aggregator.fetch_all(san_francisco)
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_cache_write_error_keeps_success(self, san_francisco):
        class BrokenStore:
            def get(self, key):
                return None

            def set(self, key, value):
                raise OSError("disk full")

            def delete(self, key):
                pass

            def keys(self):
                return []

        aggregator = WeatherAggregator(
            [FakeProvider(ProviderId.NWS)],
            cache=WeatherCache(store=BrokenStore()),
            settings=SETTINGS,
        )
        snapshot = await aggregator.fetch_all(san_francisco)
        assert snapshot.primary_source == ProviderId.NWS


class TestLocalityFallback:

    @pytest.mark.asyncio
    async def test_fallback_geocodes_locality_once(self, neighborhood, san_francisco):
        logger.info("[TEST] Testing locality fallback...")
        geocoder = FakeGeocoder({"San Francisco": san_francisco})
        providers = [
            BroaderOnlyProvider(ProviderId.NWS, serves=san_francisco),
            BroaderOnlyProvider(ProviderId.OPEN_METEO, serves=san_francisco),
        ]
        aggregator = WeatherAggregator(providers, geocoder=geocoder, settings=SETTINGS)

        snapshot = await aggregator.fetch_all(neighborhood)

        assert geocoder.calls == ["San Francisco"]
        assert snapshot.location == san_francisco
        assert snapshot.available_sources == [ProviderId.NWS, ProviderId.OPEN_METEO]
        assert [p.calls for p in providers] == [2, 2]

    @pytest.mark.asyncio
    async def test_no_fallback_when_anything_succeeded(self, neighborhood, san_francisco):
        geocoder = FakeGeocoder({"San Francisco": san_francisco})
        providers = [
            FakeProvider(ProviderId.NWS, error=unavailable("nws")),
            FakeProvider(ProviderId.OPEN_METEO),
        ]
        snapshot = await WeatherAggregator(providers, geocoder=geocoder, settings=SETTINGS).fetch_all(neighborhood)
        assert geocoder.calls == []
        assert snapshot.location == neighborhood

    @pytest.mark.asyncio
    async def test_no_fallback_without_locality(self):
        geocoder = FakeGeocoder()
        providers = [FakeProvider(ProviderId.NWS, error=unavailable("nws"))]
        aggregator = WeatherAggregator(providers, geocoder=geocoder, settings=SETTINGS)

        snapshot = await aggregator.fetch_all(Location(10.0, 20.0))

        assert geocoder.calls == []
        assert snapshot.is_empty
        with pytest.raises(NoProvidersSucceeded):
            snapshot.require_data()

    @pytest.mark.asyncio
    async def test_fallback_that_also_fails_runs_once(self, neighborhood, san_francisco):
        geocoder = FakeGeocoder({"San Francisco": san_francisco})
        provider = FakeProvider(ProviderId.NWS, error=unavailable("nws"))
        snapshot = await WeatherAggregator([provider], geocoder=geocoder, settings=SETTINGS).fetch_all(neighborhood)

        assert geocoder.calls == ["San Francisco"]
        assert provider.calls == 2
        assert snapshot.is_empty
        assert snapshot.failures[ProviderId.NWS].kind == FailureKind.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_fallback_geocode_not_found(self, neighborhood):
        geocoder = FakeGeocoder()
        provider = FakeProvider(ProviderId.NWS, error=unavailable("nws"))
        snapshot = await WeatherAggregator([provider], geocoder=geocoder, settings=SETTINGS).fetch_all(neighborhood)
        assert geocoder.calls == ["San Francisco"]
        assert snapshot.location == neighborhood
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_malformed_geocoder_response_keeps_original_snapshot(self, neighborhood):
        logger.info("[TEST] Testing fallback with a malformed geocoding response...")
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json={"results": [{"name": "San Francisco"}]})
        ))
        provider = FakeProvider(ProviderId.NWS, error=unavailable("nws"))
        aggregator = WeatherAggregator([provider], geocoder=OpenMeteoGeocoder(SETTINGS, client), settings=SETTINGS)

        async with client:
            snapshot = await aggregator.fetch_all(neighborhood)

        assert snapshot.location == neighborhood
        assert snapshot.is_empty
        assert snapshot.failures[ProviderId.NWS].kind == FailureKind.UNAVAILABLE
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_geocoder_bug_keeps_original_snapshot(self, neighborhood):
        class BrokenGeocoder(FakeGeocoder):
            async def geocode(self, address):
                self.calls.append(address)
                raise KeyError("latitude")

        geocoder = BrokenGeocoder()
        provider = FakeProvider(ProviderId.NWS, error=unavailable("nws"))
        snapshot = await WeatherAggregator([provider], geocoder=geocoder, settings=SETTINGS).fetch_all(neighborhood)

        assert geocoder.calls == ["San Francisco"]
        assert snapshot.location == neighborhood
        assert snapshot.failures[ProviderId.NWS].kind == FailureKind.UNAVAILABLE


class TestAggregateTimeout:

    @pytest.mark.asyncio
    async def test_all_hanging_providers_time_out(self, san_francisco):
        logger.info("[TEST] Testing aggregate timeout...")
        providers = [FakeProvider(ProviderId.NWS, hang=True), FakeProvider(ProviderId.GOOGLE, hang=True)]
        start = time.monotonic()
        snapshot = await WeatherAggregator(providers, settings=SETTINGS).fetch_all(san_francisco, timeout=0.2)

        assert time.monotonic() - start < 1.0
        assert snapshot.is_empty
        assert {f.kind for f in snapshot.failures.values()} == {FailureKind.TIMEOUT}

    @pytest.mark.asyncio
    async def test_configured_timeout_used_by_default(self, san_francisco):
        settings = Settings(aggregate_timeout_seconds=0.2)
        snapshot = await WeatherAggregator(
            [FakeProvider(ProviderId.NWS, hang=True), FakeProvider(ProviderId.OPEN_METEO)],
            settings=settings,
        ).fetch_all(san_francisco)
        assert snapshot.primary_source == ProviderId.OPEN_METEO
        assert snapshot.failures[ProviderId.NWS].kind == FailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_hung_provider_task_is_cancelled(self, san_francisco):
        cancelled = asyncio.Event()

        class Recording(FakeProvider):
            async def fetch(self, location):
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    cancelled.set()
                    raise

        await WeatherAggregator([Recording(ProviderId.NWS)], settings=SETTINGS).fetch_all(san_francisco, timeout=0.1)
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_caller_cancellation_stops_provider_tasks(self, san_francisco):
        logger.info("[TEST] Testing cancellation from the caller...")
        cache = WeatherCache()
        provider = FakeProvider(ProviderId.NWS, delay=0.3)
        aggregator = WeatherAggregator([provider], cache=cache, settings=SETTINGS)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(aggregator.fetch_all(san_francisco), 0.05)

        await asyncio.sleep(0.5)
        assert provider.calls == 1
        assert cache.stats()["writes"] == 0
        assert cache.get(san_francisco.id, ProviderId.NWS) is None

    @pytest.mark.asyncio
    async def test_cancelling_the_caller_task_cancels_providers(self, san_francisco):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        class Recording(FakeProvider):
            async def fetch(self, location):
                started.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    cancelled.set()
                    raise

        caller = asyncio.create_task(
            WeatherAggregator([Recording(ProviderId.NWS)], settings=SETTINGS).fetch_all(san_francisco)
        )
        await started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        assert cancelled.is_set()


class TestFetchOne:

    @pytest.fixture
    def snapshot(self, san_francisco):
        snap = WeatherSnapshot(location=san_francisco)
        snap.record_success(make_record(ProviderId.OPEN_METEO))
        snap.record_success(make_record(ProviderId.NWS, temperature=10.0))
        snap.record_failure(ProviderId.GOOGLE, ProviderFailure(FailureKind.TIMEOUT, "slow"))
        return snap

    @pytest.mark.asyncio
    async def test_success_replaces_failure_and_leaves_others(self, san_francisco, snapshot):
        logger.info("[TEST] Testing single-provider refresh...")
        google = FakeProvider(ProviderId.GOOGLE, record=make_record(ProviderId.GOOGLE, temperature=21.0))
        aggregator = WeatherAggregator([google, FakeProvider(ProviderId.NWS)], settings=SETTINGS)
        before_nws = snapshot.records[ProviderId.NWS]

        record = await aggregator.fetch_one(ProviderId.GOOGLE, san_francisco, snapshot)

        assert record.current.temperature == 21.0
        assert ProviderId.GOOGLE not in snapshot.failures
        assert snapshot.primary_source == ProviderId.GOOGLE
        assert snapshot.records[ProviderId.NWS] is before_nws

    @pytest.mark.asyncio
    async def test_failure_keeps_prior_record(self, san_francisco, snapshot):
        nws = FakeProvider(ProviderId.NWS, error=unavailable("nws"))
        aggregator = WeatherAggregator([nws], settings=SETTINGS)

        with pytest.raises(ProviderError) as exc_info:
            await aggregator.fetch_one(ProviderId.NWS, san_francisco, snapshot)

        assert exc_info.value.kind == FailureKind.UNAVAILABLE
        assert snapshot.records[ProviderId.NWS].current.temperature == 10.0
        assert ProviderId.NWS not in snapshot.failures

    @pytest.mark.asyncio
    async def test_bypasses_cache_read(self, san_francisco):
        provider = FakeProvider(ProviderId.NWS)
        aggregator = WeatherAggregator([provider], settings=SETTINGS)
        await aggregator.fetch_all(san_francisco)
        await aggregator.fetch_one(ProviderId.NWS, san_francisco)
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_unknown_provider_not_applicable(self, san_francisco, snapshot):
        aggregator = WeatherAggregator([FakeProvider(ProviderId.NWS)], settings=SETTINGS)
        with pytest.raises(ProviderError) as exc_info:
            await aggregator.fetch_one(ProviderId.WEATHERKIT, san_francisco, snapshot)
        assert exc_info.value.kind == FailureKind.NOT_APPLICABLE
        assert snapshot.failures[ProviderId.WEATHERKIT].kind == FailureKind.NOT_APPLICABLE

    @pytest.mark.asyncio
    async def test_timeout(self, san_francisco):
        aggregator = WeatherAggregator([FakeProvider(ProviderId.NWS, hang=True)], settings=SETTINGS)
        with pytest.raises(ProviderError) as exc_info:
            await aggregator.fetch_one(ProviderId.NWS, san_francisco, timeout=0.1)
        assert exc_info.value.kind == FailureKind.TIMEOUT
