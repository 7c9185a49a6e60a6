"""
Google Maps Platform Weather API Provider for Sky Compare

Google Weather is reached through an authenticating proxy (Cloud Run)
that holds the real Maps key; this client only knows the proxy base URL
and the proxy's X-API-Key.

Three lookups run in parallel:
- /v1/currentConditions:lookup
- /v1/forecast/hours:lookup   (paginated, 24 hours per page)
- /v1/forecast/days:lookup    (paginated)

Values arrive unit-tagged (CELSIUS, KILOMETERS_PER_HOUR, ...), so each
one is converted through the normalizer using its own unit. The daily
endpoint has no pressure; daily pressure stays absent.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

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
    condition_from_google,
    moon_phase_from_name,
    to_celsius,
    to_fraction,
    to_meters,
    to_meters_per_second,
    to_millimeters,
)
from sky_compare.providers.base import get_nested, open_client, parsing, request_json, truncate

logger = logging.getLogger(__name__)


def _temperature(item: Dict[str, Any], key: str) -> Optional[float]:
    block = item.get(key) or {}
    return to_celsius(block.get("degrees"), block.get("unit") or "CELSIUS")


def _wind_speed(item: Dict[str, Any]) -> Optional[float]:
    speed = get_nested(item, ["wind", "speed"], {})
    return to_meters_per_second(speed.get("value"), speed.get("unit") or "KILOMETERS_PER_HOUR")


def _visibility(item: Dict[str, Any]) -> Optional[float]:
    block = item.get("visibility") or {}
    return to_meters(block.get("distance"), block.get("unit") or "KILOMETERS")


def _precip_amount(item: Dict[str, Any]) -> Optional[float]:
    qpf = get_nested(item, ["precipitation", "qpf"], {})
    return to_millimeters(qpf.get("quantity"), qpf.get("unit") or "MILLIMETERS")


def _description(item: Dict[str, Any]) -> str:
    return get_nested(item, ["weatherCondition", "description", "text"], "")


class GoogleWeatherProvider:
    """
    Provider for Google Maps Weather API via the authenticating proxy.

    Not applicable unless both the proxy URL and its key are configured.
    """

    provider_id = ProviderId.GOOGLE
    attribution = DEFAULT_ATTRIBUTIONS[ProviderId.GOOGLE]

    # Safety valve for pagination
    MAX_PAGES = 5

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        logger.info("[GoogleWeatherProvider] Initializing provider...")
        self.settings = settings
        self.client = client
        if not (settings.google_proxy_url and settings.google_proxy_key):
            logger.info("[GoogleWeatherProvider] Proxy URL/key not configured, provider disabled")

    def is_applicable(self, location: Location) -> bool:
        return bool(self.settings.google_proxy_url and self.settings.google_proxy_key)

    async def fetch(self, location: Location) -> ProviderRecord:
        logger.info(f"[GoogleWeatherProvider] Fetching forecast for {location.name}...")
        base = self.settings.google_proxy_url
        params = {
            "location.latitude": location.latitude,
            "location.longitude": location.longitude,
        }

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            current, hours, days = await asyncio.gather(
                self._get(client, f"{base}/v1/currentConditions:lookup", params),
                self._paginate(
                    client, f"{base}/v1/forecast/hours:lookup",
                    {**params, "hours": self.settings.hourly_limit},
                    "forecastHours", self.settings.hourly_limit,
                ),
                self._paginate(
                    client, f"{base}/v1/forecast/days:lookup",
                    {**params, "days": self.settings.daily_limit},
                    "forecastDays", self.settings.daily_limit,
                ),
            )

        with parsing(self.provider_id.value):
            record = ProviderRecord(
                provider=self.provider_id,
                current=self._current(current),
                hourly=truncate([p for p in map(self._hourly_point, hours) if p], self.settings.hourly_limit),
                daily=truncate(
                    [d for d in (self._daily_point(day, location.timezone) for day in days) if d],
                    self.settings.daily_limit,
                ),
                attribution=self.attribution,
            )

        logger.info(
            f"[GoogleWeatherProvider] Retrieved {len(record.hourly)} hourly / {len(record.daily)} daily records"
        )
        return record

    async def _get(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> Any:
        return await request_json(
            client,
            url,
            provider=self.provider_id.value,
            params=params,
            headers={"X-API-Key": self.settings.google_proxy_key},
            timeout=self.settings.request_timeout_seconds,
            retry=self.settings.retry,
        )

    async def _paginate(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Dict[str, Any],
        list_key: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Follow nextPageToken until `limit` items are collected."""
        items: List[Dict[str, Any]] = []
        page_params = dict(params)
        page_count = 0

        while len(items) < limit and page_count < self.MAX_PAGES:
            data = await self._get(client, url, page_params)
            with parsing(self.provider_id.value):
                items.extend(data.get(list_key) or [])
                next_page_token = data.get("nextPageToken")
            page_count += 1

            if not next_page_token:
                break
            page_params["pageToken"] = next_page_token

        logger.debug(f"[GoogleWeatherProvider] {list_key}: {len(items)} items ({page_count} pages)")
        return items[:limit]

    def _current(self, data: Dict[str, Any]) -> CurrentConditions:
        temperature = _temperature(data, "temperature")
        if temperature is None:
            raise ValueError("currentConditions has no temperature")
        feels_like = _temperature(data, "feelsLikeTemperature")
        condition_type = get_nested(data, ["weatherCondition", "type"])

        return CurrentConditions(
            observed_at=parse_instant(data["currentTime"]),
            temperature=temperature,
            apparent_temperature=feels_like if feels_like is not None else temperature,
            condition=condition_from_google(condition_type),
            condition_description=_description(data),
            humidity=to_fraction(data.get("relativeHumidity")),
            pressure=get_nested(data, ["airPressure", "meanSeaLevelMillibars"]),
            wind_speed=_wind_speed(data),
            wind_direction=get_nested(data, ["wind", "direction", "degrees"]),
            uv_index=data.get("uvIndex"),
            visibility=_visibility(data),
            cloud_cover=to_fraction(data.get("cloudCover")),
            dew_point=_temperature(data, "dewPoint"),
        )

    def _hourly_point(self, hour: Dict[str, Any]) -> Optional[HourlyPoint]:
        start = get_nested(hour, ["interval", "startTime"])
        temperature = _temperature(hour, "temperature")
        if not start or temperature is None:
            logger.debug("[GoogleWeatherProvider] Skipping hour without start time or temperature")
            return None

        return HourlyPoint(
            time=parse_instant(start),
            temperature=temperature,
            condition=condition_from_google(get_nested(hour, ["weatherCondition", "type"])),
            apparent_temperature=_temperature(hour, "feelsLikeTemperature"),
            precipitation_chance=to_fraction(get_nested(hour, ["precipitation", "probability", "percent"])),
            precipitation_amount=_precip_amount(hour),
            humidity=to_fraction(hour.get("relativeHumidity")),
            pressure=get_nested(hour, ["airPressure", "meanSeaLevelMillibars"]),
            wind_speed=_wind_speed(hour),
            wind_direction=get_nested(hour, ["wind", "direction", "degrees"]),
            uv_index=hour.get("uvIndex"),
            visibility=_visibility(hour),
            cloud_cover=to_fraction(hour.get("cloudCover")),
            dew_point=_temperature(hour, "dewPoint"),
        )

    def _daily_point(self, day: Dict[str, Any], tz_name: str) -> Optional[DailyPoint]:
        display = day.get("displayDate")
        high = _temperature(day, "maxTemperature")
        low = _temperature(day, "minTemperature")
        if not display or high is None or low is None:
            logger.debug("[GoogleWeatherProvider] Skipping day without displayDate or high/low")
            return None

        daytime = day.get("daytimeForecast") or {}
        sun = day.get("sunEvents") or {}

        return DailyPoint(
            date=self._local_midnight(display, tz_name),
            high_temperature=high,
            low_temperature=low,
            condition=condition_from_google(get_nested(daytime, ["weatherCondition", "type"])),
            condition_description=_description(daytime),
            precipitation_chance=to_fraction(get_nested(daytime, ["precipitation", "probability", "percent"])),
            precipitation_amount=_precip_amount(daytime),
            sunrise=parse_instant(sun.get("sunriseTime")),
            sunset=parse_instant(sun.get("sunsetTime")),
            moon_phase=moon_phase_from_name(get_nested(day, ["moonEvents", "moonPhase"])),
            humidity=to_fraction(daytime.get("relativeHumidity")),
            pressure=None,
            wind_speed=_wind_speed(daytime),
            uv_index=daytime.get("uvIndex"),
        )

    @staticmethod
    def _local_midnight(display: Dict[str, int], tz_name: str) -> datetime:
        """Google's displayDate is a calendar date in the location's own timezone."""
        try:
            tz = ZoneInfo(tz_name or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"[GoogleWeatherProvider] Unknown timezone {tz_name!r}, using UTC")
            tz = ZoneInfo("UTC")
        local = datetime(display["year"], display["month"], display["day"], tzinfo=tz)
        return local.astimezone(timezone.utc)


if __name__ == "__main__":
    from sky_compare.config import configure_logging

    configure_logging()

    async def test():
        provider = GoogleWeatherProvider(Settings.from_env())
        location = Location(37.6391, -120.9969, "Modesto, CA", "America/Los_Angeles", country_code="US")
        if not provider.is_applicable(location):
            print("Set GOOGLE_WEATHER_PROXY_URL and GOOGLE_WEATHER_PROXY_KEY first")
            return
        record = await provider.fetch(location)
        print(f"\nGoogle current: {record.current.temperature:.1f}C {record.current.condition_description}")
        for day in record.daily:
            print(f"  {day.date.date()}: {day.high_temperature:.1f}/{day.low_temperature:.1f}C {day.condition_description}")

    asyncio.run(test())
