"""
Weather Aggregator for Sky Compare

Fans out one task per applicable provider, waits for all of them and
collects each outcome independently into a WeatherSnapshot:

1. Filter providers with is_applicable(location)
2. Per provider: cache hit -> done; miss -> adapter fetch -> cache write
3. Wait for every task (no first-wins, no fail-fast)
4. Nothing succeeded and the location has a locality -> geocode the
   locality once and repeat 1-3 for the broader location
5. Return the snapshot; an empty one is the "no data" outcome

An optional aggregate timeout bounds the whole call, fallback included.
Tasks still running at the deadline are cancelled and recorded as
TIMEOUT failures; whatever finished before it is kept.
Cancelling fetch_all itself cancels every provider task it started.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import httpx

from sky_compare.cache_manager import JsonFileStore, MemoryStore, WeatherCache
from sky_compare.config import Settings
from sky_compare.geocoding import Geocoder, GeocodingError, OpenMeteoGeocoder
from sky_compare.models import (
    Location,
    ProviderFailure,
    ProviderId,
    ProviderRecord,
    WeatherSnapshot,
    sort_by_priority,
)
from sky_compare.providers import build_providers
from sky_compare.providers.base import WeatherProvider
from sky_compare.resilience import FailureKind, ProviderError, categorize_error

logger = logging.getLogger(__name__)


@dataclass
class ProviderSuccess:
    provider: ProviderId
    record: ProviderRecord
    from_cache: bool = False


@dataclass
class ProviderFailureOutcome:
    provider: ProviderId
    failure: ProviderFailure


ProviderOutcome = Union[ProviderSuccess, ProviderFailureOutcome]


class _Deadline:
    """Remaining share of an optional overall timeout."""

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self._end = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self._end is None:
            return None
        return max(0.0, self._end - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class WeatherAggregator:
    """
    Queries every applicable provider concurrently and merges the results.

    Args:
        providers: Adapters implementing the WeatherProvider protocol
        cache: Shared TTL cache of provider records
        geocoder: Resolves a locality for the fallback round (optional)
        settings: Timeouts and TTL; defaults to Settings()
    """

    def __init__(
        self,
        providers: Sequence[WeatherProvider],
        cache: Optional[WeatherCache] = None,
        geocoder: Optional[Geocoder] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.providers: Dict[ProviderId, WeatherProvider] = {}
        for provider in providers:
            if provider.provider_id in self.providers:
                raise ValueError(f"Duplicate provider {provider.provider_id.value}")
            self.providers[provider.provider_id] = provider
        self.cache = cache if cache is not None else WeatherCache(ttl_seconds=self.settings.cache_ttl_seconds)
        self.geocoder = geocoder
        logger.info(
            f"[WeatherAggregator] Initialized with providers: "
            f"{', '.join(p.value for p in sort_by_priority(self.providers))}"
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        geocoder: Optional[Geocoder] = None,
    ) -> "WeatherAggregator":
        """Wire the default adapters, cache store and geocoder from Settings."""
        store = JsonFileStore(settings.cache_dir) if settings.cache_dir else MemoryStore()
        return cls(
            providers=build_providers(settings, client),
            cache=WeatherCache(store=store, ttl_seconds=settings.cache_ttl_seconds),
            geocoder=geocoder or OpenMeteoGeocoder(settings, client),
            settings=settings,
        )

    def applicable_providers(self, location: Location) -> List[WeatherProvider]:
        return [
            self.providers[pid]
            for pid in sort_by_priority(self.providers)
            if self.providers[pid].is_applicable(location)
        ]

    async def fetch_all(self, location: Location, timeout: Optional[float] = None) -> WeatherSnapshot:
        """
        Fetch from every applicable provider, with one locality fallback round.

        Args:
            location: Where to fetch weather for
            timeout: Overall bound in seconds; defaults to the configured
                aggregate timeout (None in Settings means unbounded)

        Returns:
            WeatherSnapshot, possibly empty. Call require_data() on it to
            turn an empty result into NoProvidersSucceeded.
        """
        deadline = _Deadline(timeout if timeout is not None else self.settings.aggregate_timeout_seconds)
        start = time.monotonic()
        logger.info(f"[WeatherAggregator] fetch_all for {location.name} ({location.id})")

        snapshot = await self._fan_out(location, deadline)
        if not snapshot.is_empty:
            self._log_summary(snapshot, time.monotonic() - start)
            return snapshot

        if not location.locality:
            logger.error(f"[WeatherAggregator] No provider succeeded for {location.name} and no locality to fall back to")
            return snapshot
        if self.geocoder is None:
            logger.error("[WeatherAggregator] No provider succeeded and no geocoder configured for fallback")
            return snapshot
        if deadline.expired:
            logger.error("[WeatherAggregator] No provider succeeded and the deadline left no time for fallback")
            return snapshot

        logger.warning(f"[WeatherAggregator] No provider succeeded, falling back to locality {location.locality!r}")
        try:
            broader = await asyncio.wait_for(self.geocoder.geocode(location.locality), deadline.remaining())
        except asyncio.TimeoutError:
            logger.error("[WeatherAggregator] Fallback geocode timed out")
            return snapshot
        except GeocodingError as e:
            logger.error(f"[WeatherAggregator] Fallback geocode failed: {e}")
            return snapshot
        except Exception as e:
            logger.error(f"[WeatherAggregator] Fallback geocode raised unexpectedly: {e}", exc_info=True)
            return snapshot

        fallback = await self._fan_out(broader, deadline)
        if fallback.is_empty:
            logger.error(f"[WeatherAggregator] Fallback to {broader.name} also returned no data")
        self._log_summary(fallback, time.monotonic() - start)
        return fallback

    async def fetch_one(
        self,
        provider_id: ProviderId,
        location: Location,
        snapshot: Optional[WeatherSnapshot] = None,
        timeout: Optional[float] = None,
    ) -> ProviderRecord:
        """
        Refresh a single provider, bypassing the cache read.

        When a snapshot is given, only this provider's entry changes: a
        success replaces its record and clears any failure; a failure is
        recorded unless a previous record exists, which is kept.

        Raises:
            ProviderError: the adapter failed, is unknown or is not
                applicable to this location
        """
        provider = self.providers.get(provider_id)
        if provider is None or not provider.is_applicable(location):
            error = ProviderError(
                FailureKind.NOT_APPLICABLE,
                f"{provider_id.value} is not available for {location.name}",
                provider_id.value,
            )
            if snapshot is not None and snapshot.record_for(provider_id) is None:
                snapshot.record_failure(provider_id, ProviderFailure.from_error(error))
            raise error

        bound = timeout if timeout is not None else self.settings.aggregate_timeout_seconds
        logger.info(f"[WeatherAggregator] fetch_one {provider_id.value} for {location.name}")
        try:
            outcome = await asyncio.wait_for(self._run(provider, location, use_cache=False), bound)
        except asyncio.TimeoutError:
            outcome = ProviderFailureOutcome(
                provider_id, ProviderFailure(FailureKind.TIMEOUT, f"No result within {bound}s")
            )

        if isinstance(outcome, ProviderSuccess):
            if snapshot is not None:
                snapshot.record_success(outcome.record)
            return outcome.record

        if snapshot is not None and snapshot.record_for(provider_id) is None:
            snapshot.record_failure(provider_id, outcome.failure)
        raise ProviderError(outcome.failure.kind, outcome.failure.message, provider_id.value)

    async def _fan_out(self, location: Location, deadline: _Deadline) -> WeatherSnapshot:
        snapshot = WeatherSnapshot(location=location)
        applicable = self.applicable_providers(location)
        skipped = [pid.value for pid in self.providers if self.providers[pid] not in applicable]
        if skipped:
            logger.debug(f"[WeatherAggregator] Not applicable for {location.name}: {', '.join(skipped)}")
        if not applicable:
            logger.warning(f"[WeatherAggregator] No applicable providers for {location.name}")
            return snapshot

        tasks: Dict[ProviderId, asyncio.Task] = {
            provider.provider_id: asyncio.create_task(self._run(provider, location))
            for provider in applicable
        }
        try:
            done, pending = await asyncio.wait(tasks.values(), timeout=deadline.remaining())
        except asyncio.CancelledError:
            # Caller went away: no provider task may outlive this call
            logger.warning(f"[WeatherAggregator] fetch for {location.name} cancelled, stopping {len(tasks)} tasks")
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for pid, task in tasks.items():
            if task in pending:
                logger.warning(f"[WeatherAggregator] {pid.value}: cancelled at the {deadline.timeout}s deadline")
                outcome: ProviderOutcome = ProviderFailureOutcome(
                    pid, ProviderFailure(FailureKind.TIMEOUT, f"Cancelled after {deadline.timeout}s")
                )
            else:
                outcome = task.result()

            if isinstance(outcome, ProviderSuccess):
                snapshot.record_success(outcome.record)
            else:
                snapshot.record_failure(pid, outcome.failure)

        return snapshot

    async def _run(self, provider: WeatherProvider, location: Location, use_cache: bool = True) -> ProviderOutcome:
        """One provider task. Always returns a tagged outcome; only cancellation propagates."""
        pid = provider.provider_id
        name = pid.value

        if use_cache:
            cached = self.cache.get(location.id, pid)
            if cached is not None:
                logger.info(f"[WeatherAggregator] {name}: cache hit for {location.id}")
                return ProviderSuccess(pid, cached, from_cache=True)

        start = time.monotonic()
        try:
            record = await provider.fetch(location)
        except ProviderError as e:
            logger.warning(f"[WeatherAggregator] {name} failed: {e}")
            return ProviderFailureOutcome(pid, ProviderFailure.from_error(e))
        except Exception as e:
            error = categorize_error(e, name)
            logger.error(f"[WeatherAggregator] {name} raised unexpectedly: {error}", exc_info=True)
            return ProviderFailureOutcome(pid, ProviderFailure.from_error(error))

        try:
            self.cache.put(location.id, pid, record)
        except OSError as e:
            logger.warning(f"[WeatherAggregator] {name}: could not cache record: {e}")

        logger.info(f"[WeatherAggregator] {name}: FRESH ({time.monotonic() - start:.2f}s)")
        return ProviderSuccess(pid, record)

    @staticmethod
    def _log_summary(snapshot: WeatherSnapshot, elapsed: float) -> None:
        ok = ", ".join(p.value for p in snapshot.available_sources) or "none"
        failed = ", ".join(f"{p.value} ({f.kind.value})" for p, f in snapshot.failures.items()) or "none"
        logger.info(
            f"[WeatherAggregator] Complete in {elapsed:.2f}s for {snapshot.location.name}: "
            f"succeeded: {ok}; failed: {failed}; primary: "
            f"{snapshot.primary_source.value if snapshot.primary_source else 'none'}"
        )


if __name__ == "__main__":
    import sys

    from sky_compare.comparison import ComparisonAnalyzer
    from sky_compare.config import configure_logging
    from sky_compare.normalizer import celsius_to_fahrenheit

    configure_logging()

    async def main():
        settings = Settings.from_env()
        query = " ".join(sys.argv[1:]) or "Modesto, CA"
        async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
            aggregator = WeatherAggregator.from_settings(settings, client)
            location = await aggregator.geocoder.geocode(query)
            snapshot = (await aggregator.fetch_all(location)).require_data()

        print(f"\n{snapshot.location.name}  (primary: {snapshot.primary_source.value})")
        for pid in snapshot.available_sources:
            current = snapshot.records[pid].current
            print(f"  {pid.value:16s} {celsius_to_fahrenheit(current.temperature):5.1f}F  {current.condition.description}")
        for pid, failure in snapshot.failures.items():
            print(f"  {pid.value:16s} FAILED  {failure}")

        comparison = ComparisonAnalyzer().analyze(snapshot)
        print(f"\nNext 24h worst disagreement: {comparison.temperature_variance:.1f}F "
              f"({comparison.temperature_agreement}), precip {comparison.precipitation_difference:.0f}%")

    asyncio.run(main())
