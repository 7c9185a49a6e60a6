"""
Apple WeatherKit REST Provider for Sky Compare

A single /api/v1/weather call requests the currentWeather,
forecastHourly and forecastDaily data sets. Authentication is a
pre-issued developer JWT sent as a bearer token; minting that token is
left to deployment tooling.

WeatherKit units: Celsius, km/h wind, millibar pressure, metre
visibility, fractions already on 0-1.
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
    condition_from_weatherkit,
    moon_phase_from_name,
    to_fraction,
    to_meters,
    to_meters_per_second,
)
from sky_compare.providers.base import get_nested, open_client, parsing, request_json, truncate
from sky_compare.resilience import FailureKind, ProviderError

logger = logging.getLogger(__name__)

DATA_SETS = "currentWeather,forecastHourly,forecastDaily"


def _kmh(value: Any) -> Optional[float]:
    return to_meters_per_second(value, "km/h")


class WeatherKitProvider:
    """Provider for Apple WeatherKit over its REST interface."""

    provider_id = ProviderId.WEATHERKIT
    attribution = DEFAULT_ATTRIBUTIONS[ProviderId.WEATHERKIT]
    BASE_URL = "https://weatherkit.apple.com/api/v1/weather"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        logger.info("[WeatherKitProvider] Initializing provider...")
        self.settings = settings
        self.client = client
        if not settings.weatherkit_token:
            logger.info("[WeatherKitProvider] No token, provider disabled")

    def is_applicable(self, location: Location) -> bool:
        return bool(self.settings.weatherkit_token)

    async def fetch(self, location: Location) -> ProviderRecord:
        logger.info(f"[WeatherKitProvider] Fetching forecast for {location.name}...")
        url = f"{self.BASE_URL}/en/{location.latitude}/{location.longitude}"
        params = {"dataSets": DATA_SETS, "timezone": location.timezone or "UTC"}

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            data = await request_json(
                client,
                url,
                provider=self.provider_id.value,
                params=params,
                headers={"Authorization": f"Bearer {self.settings.weatherkit_token}"},
                timeout=self.settings.request_timeout_seconds,
                retry=self.settings.retry,
            )

        with parsing(self.provider_id.value):
            if not data.get("currentWeather"):
                raise ProviderError(
                    FailureKind.MALFORMED_RESPONSE,
                    "Response has no currentWeather data set",
                    self.provider_id.value,
                )
            record = ProviderRecord(
                provider=self.provider_id,
                current=self._current(data["currentWeather"]),
                hourly=truncate(
                    [self._hourly_point(h) for h in get_nested(data, ["forecastHourly", "hours"], [])],
                    self.settings.hourly_limit,
                ),
                daily=truncate(
                    [self._daily_point(d) for d in get_nested(data, ["forecastDaily", "days"], [])],
                    self.settings.daily_limit,
                ),
                attribution=self.attribution,
            )

        logger.info(
            f"[WeatherKitProvider] Retrieved {len(record.hourly)} hourly / {len(record.daily)} daily records"
        )
        return record

    def _current(self, data: Dict[str, Any]) -> CurrentConditions:
        condition = condition_from_weatherkit(data.get("conditionCode"))
        temperature = float(data["temperature"])
        apparent = data.get("temperatureApparent")
        return CurrentConditions(
            observed_at=parse_instant(data["asOf"]),
            temperature=temperature,
            apparent_temperature=float(apparent) if apparent is not None else temperature,
            condition=condition,
            condition_description=condition.description,
            humidity=to_fraction(data.get("humidity"), scale=1.0),
            pressure=data.get("pressure"),
            wind_speed=_kmh(data.get("windSpeed")),
            wind_direction=data.get("windDirection"),
            uv_index=data.get("uvIndex"),
            visibility=to_meters(data.get("visibility"), "m"),
            cloud_cover=to_fraction(data.get("cloudCover"), scale=1.0),
            dew_point=data.get("temperatureDewPoint"),
        )

    def _hourly_point(self, hour: Dict[str, Any]) -> HourlyPoint:
        return HourlyPoint(
            time=parse_instant(hour["forecastStart"]),
            temperature=float(hour["temperature"]),
            condition=condition_from_weatherkit(hour.get("conditionCode")),
            apparent_temperature=hour.get("temperatureApparent"),
            precipitation_chance=to_fraction(hour.get("precipitationChance"), scale=1.0),
            precipitation_amount=hour.get("precipitationAmount"),
            humidity=to_fraction(hour.get("humidity"), scale=1.0),
            pressure=hour.get("pressure"),
            wind_speed=_kmh(hour.get("windSpeed")),
            wind_direction=hour.get("windDirection"),
            uv_index=hour.get("uvIndex"),
            visibility=to_meters(hour.get("visibility"), "m"),
            cloud_cover=to_fraction(hour.get("cloudCover"), scale=1.0),
            dew_point=hour.get("temperatureDewPoint"),
        )

    def _daily_point(self, day: Dict[str, Any]) -> DailyPoint:
        condition = condition_from_weatherkit(day.get("conditionCode"))
        daytime = day.get("daytimeForecast") or {}
        return DailyPoint(
            date=parse_instant(day["forecastStart"]),
            high_temperature=float(day["temperatureMax"]),
            low_temperature=float(day["temperatureMin"]),
            condition=condition,
            condition_description=condition.description,
            precipitation_chance=to_fraction(day.get("precipitationChance"), scale=1.0),
            precipitation_amount=day.get("precipitationAmount"),
            sunrise=parse_instant(day.get("sunrise")),
            sunset=parse_instant(day.get("sunset")),
            moon_phase=moon_phase_from_name(day.get("moonPhase")),
            humidity=to_fraction(daytime.get("humidity"), scale=1.0),
            wind_speed=_kmh(daytime.get("windSpeed")),
            uv_index=day.get("maxUvIndex"),
        )


if __name__ == "__main__":
    from sky_compare.config import configure_logging

    configure_logging()

    async def test():
        provider = WeatherKitProvider(Settings.from_env())
        location = Location(37.6391, -120.9969, "Modesto, CA", "America/Los_Angeles", country_code="US")
        if not provider.is_applicable(location):
            print("Set WEATHERKIT_TOKEN first")
            return
        record = await provider.fetch(location)
        print(f"\nWeatherKit current: {record.current.temperature:.1f}C {record.current.condition_description}")
        for day in record.daily:
            print(f"  {day.date.date()}: {day.high_temperature:.1f}/{day.low_temperature:.1f}C {day.condition_description}")

    asyncio.run(test())
