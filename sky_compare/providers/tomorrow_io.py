"""
Tomorrow.io Provider for Sky Compare

One call to the v4 timelines endpoint with timesteps=current,1h,1d and
units=metric. Percent fields become fractions, visibility arrives in km.

Daily high/low use temperatureMax/temperatureMin when the plan returns
them and fall back to the day's average temperature otherwise.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from sky_compare.config import Settings
from sky_compare.models import (
    DEFAULT_ATTRIBUTIONS,
    CurrentConditions,
    DailyPoint,
    HourlyPoint,
    Location,
    ProviderId,
    ProviderRecord,
    parse_instant,
)
from sky_compare.normalizer import (
    condition_from_tomorrow,
    to_fraction,
    to_meters,
    tomorrow_description,
)
from sky_compare.providers.base import open_client, parsing, request_json, truncate
from sky_compare.resilience import FailureKind, ProviderError

logger = logging.getLogger(__name__)

FIELDS = [
    "temperature",
    "temperatureApparent",
    "temperatureMax",
    "temperatureMin",
    "humidity",
    "dewPoint",
    "windSpeed",
    "windDirection",
    "pressureSurfaceLevel",
    "uvIndex",
    "visibility",
    "cloudCover",
    "precipitationProbability",
    "weatherCode",
    "sunriseTime",
    "sunsetTime",
    "moonPhase",
]


def _moon_phase(code: Any) -> Optional[float]:
    # Tomorrow.io codes 0..7 step through the cycle from new moon
    if code is None:
        return None
    return (int(code) % 8) / 8


class TomorrowIOProvider:
    """Provider for the Tomorrow.io timelines API."""

    provider_id = ProviderId.TOMORROW_IO
    attribution = DEFAULT_ATTRIBUTIONS[ProviderId.TOMORROW_IO]
    BASE_URL = "https://api.tomorrow.io/v4/timelines"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        logger.info("[TomorrowIOProvider] Initializing provider...")
        self.settings = settings
        self.client = client
        if not settings.tomorrow_api_key:
            logger.info("[TomorrowIOProvider] No API key, provider disabled")

    def is_applicable(self, location: Location) -> bool:
        return bool(self.settings.tomorrow_api_key)

    async def fetch(self, location: Location) -> ProviderRecord:
        logger.info(f"[TomorrowIOProvider] Fetching forecast for {location.name}...")
        params = {
            "location": f"{location.latitude},{location.longitude}",
            "fields": ",".join(FIELDS),
            "timesteps": "current,1h,1d",
            "units": "metric",
            "apikey": self.settings.tomorrow_api_key,
        }

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            data = await request_json(
                client,
                self.BASE_URL,
                provider=self.provider_id.value,
                params=params,
                timeout=self.settings.request_timeout_seconds,
                retry=self.settings.retry,
            )

        with parsing(self.provider_id.value):
            timelines = {t["timestep"]: t.get("intervals") or [] for t in data["data"]["timelines"]}
            current = timelines.get("current") or []
            if not current:
                raise ProviderError(
                    FailureKind.MALFORMED_RESPONSE,
                    "No current interval in timelines response",
                    self.provider_id.value,
                )
            record = ProviderRecord(
                provider=self.provider_id,
                current=self._current(current[0]),
                hourly=truncate(self._hourly(timelines.get("1h") or []), self.settings.hourly_limit),
                daily=truncate(self._daily(timelines.get("1d") or []), self.settings.daily_limit),
                attribution=self.attribution,
            )

        logger.info(
            f"[TomorrowIOProvider] Retrieved {len(record.hourly)} hourly / {len(record.daily)} daily records"
        )
        return record

    def _current(self, interval: Dict[str, Any]) -> CurrentConditions:
        values = interval["values"]
        temperature = float(values["temperature"])
        apparent = values.get("temperatureApparent")
        code = values.get("weatherCode")
        return CurrentConditions(
            observed_at=parse_instant(interval["startTime"]),
            temperature=temperature,
            apparent_temperature=float(apparent) if apparent is not None else temperature,
            condition=condition_from_tomorrow(code),
            condition_description=tomorrow_description(code),
            humidity=to_fraction(values.get("humidity")),
            pressure=values.get("pressureSurfaceLevel"),
            wind_speed=values.get("windSpeed"),
            wind_direction=values.get("windDirection"),
            uv_index=values.get("uvIndex"),
            visibility=to_meters(values.get("visibility"), "km"),
            cloud_cover=to_fraction(values.get("cloudCover")),
            dew_point=values.get("dewPoint"),
        )

    def _hourly(self, intervals: List[Dict[str, Any]]) -> List[HourlyPoint]:
        points: List[HourlyPoint] = []
        for interval in intervals:
            values = interval.get("values") or {}
            if values.get("temperature") is None:
                continue
            points.append(HourlyPoint(
                time=parse_instant(interval["startTime"]),
                temperature=float(values["temperature"]),
                condition=condition_from_tomorrow(values.get("weatherCode")),
                apparent_temperature=values.get("temperatureApparent"),
                precipitation_chance=to_fraction(values.get("precipitationProbability")),
                humidity=to_fraction(values.get("humidity")),
                pressure=values.get("pressureSurfaceLevel"),
                wind_speed=values.get("windSpeed"),
                wind_direction=values.get("windDirection"),
                uv_index=values.get("uvIndex"),
                visibility=to_meters(values.get("visibility"), "km"),
                cloud_cover=to_fraction(values.get("cloudCover")),
                dew_point=values.get("dewPoint"),
            ))
        return points

    def _daily(self, intervals: List[Dict[str, Any]]) -> List[DailyPoint]:
        days: List[DailyPoint] = []
        for interval in intervals:
            values = interval.get("values") or {}
            average = values.get("temperature")
            high = values.get("temperatureMax", average)
            low = values.get("temperatureMin", average)
            if high is None or low is None:
                continue
            code = values.get("weatherCode")
            days.append(DailyPoint(
                date=parse_instant(interval["startTime"]),
                high_temperature=float(high),
                low_temperature=float(low),
                condition=condition_from_tomorrow(code),
                condition_description=tomorrow_description(code),
                precipitation_chance=to_fraction(values.get("precipitationProbability")),
                sunrise=parse_instant(values.get("sunriseTime")),
                sunset=parse_instant(values.get("sunsetTime")),
                moon_phase=_moon_phase(values.get("moonPhase")),
                humidity=to_fraction(values.get("humidity")),
                pressure=values.get("pressureSurfaceLevel"),
                wind_speed=values.get("windSpeed"),
                uv_index=values.get("uvIndex"),
            ))
        return days


if __name__ == "__main__":
    from sky_compare.config import configure_logging

    configure_logging()

    async def test():
        provider = TomorrowIOProvider(Settings.from_env())
        location = Location(37.6391, -120.9969, "Modesto, CA", "America/Los_Angeles", country_code="US")
        if not provider.is_applicable(location):
            print("Set TOMORROW_API_KEY first")
            return
        record = await provider.fetch(location)
        print(f"\nTomorrow.io current: {record.current.temperature:.1f}C {record.current.condition_description}")
        for day in record.daily:
            print(f"  {day.date.date()}: {day.high_temperature:.1f}/{day.low_temperature:.1f}C {day.condition_description}")

    asyncio.run(test())
