"""
OpenWeatherMap Provider for Sky Compare

Uses the free 2.5 endpoints with units=metric:
- /weather   current conditions (also carries today's sunrise/sunset)
- /forecast  5 day / 3 hour forecast

OWM has no daily endpoint on the free tier, so daily points are built by
grouping the 3-hour items by calendar day in the location's timezone.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
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
    from_epoch,
)
from sky_compare.normalizer import condition_from_owm, to_fraction, to_meters
from sky_compare.providers.base import get_nested, open_client, parsing, request_json, truncate

logger = logging.getLogger(__name__)


def _weather(item: Dict[str, Any]) -> Dict[str, Any]:
    weather = item.get("weather") or [{}]
    return weather[0]


def _description(item: Dict[str, Any]) -> str:
    return (_weather(item).get("description") or "").capitalize()


def _precip_amount(item: Dict[str, Any]) -> Optional[float]:
    rain = get_nested(item, ["rain", "3h"])
    snow = get_nested(item, ["snow", "3h"])
    if rain is None and snow is None:
        return None
    return (rain or 0.0) + (snow or 0.0)


class OpenWeatherMapProvider:
    """Provider for the OpenWeatherMap current + 5 day/3 hour forecast API."""

    provider_id = ProviderId.OPEN_WEATHER_MAP
    attribution = DEFAULT_ATTRIBUTIONS[ProviderId.OPEN_WEATHER_MAP]
    BASE_URL = "https://api.openweathermap.org/data/2.5"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        logger.info("[OpenWeatherMapProvider] Initializing provider...")
        self.settings = settings
        self.client = client
        if not settings.owm_api_key:
            logger.info("[OpenWeatherMapProvider] No API key, provider disabled")

    def is_applicable(self, location: Location) -> bool:
        return bool(self.settings.owm_api_key)

    async def fetch(self, location: Location) -> ProviderRecord:
        logger.info(f"[OpenWeatherMapProvider] Fetching forecast for {location.name}...")
        params = {
            "lat": location.latitude,
            "lon": location.longitude,
            "appid": self.settings.owm_api_key,
            "units": "metric",
        }

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            current, forecast = await asyncio.gather(
                self._get(client, f"{self.BASE_URL}/weather", params),
                self._get(client, f"{self.BASE_URL}/forecast", params),
            )

        with parsing(self.provider_id.value):
            items = sorted(forecast.get("list") or [], key=lambda item: item["dt"])
            record = ProviderRecord(
                provider=self.provider_id,
                current=self._current(current),
                hourly=truncate([self._hourly_point(item) for item in items], self.settings.hourly_limit),
                daily=truncate(self.group_by_day(items, current, location.timezone), self.settings.daily_limit),
                attribution=self.attribution,
            )

        logger.info(
            f"[OpenWeatherMapProvider] Retrieved {len(record.hourly)} hourly / {len(record.daily)} daily records"
        )
        return record

    async def _get(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> Any:
        return await request_json(
            client,
            url,
            provider=self.provider_id.value,
            params=params,
            timeout=self.settings.request_timeout_seconds,
            retry=self.settings.retry,
        )

    def _current(self, data: Dict[str, Any]) -> CurrentConditions:
        main = data["main"]
        return CurrentConditions(
            observed_at=from_epoch(data["dt"]),
            temperature=float(main["temp"]),
            apparent_temperature=float(main.get("feels_like", main["temp"])),
            condition=condition_from_owm(_weather(data).get("id")),
            condition_description=_description(data),
            humidity=to_fraction(main.get("humidity")),
            pressure=main.get("pressure"),
            wind_speed=get_nested(data, ["wind", "speed"]),
            wind_direction=get_nested(data, ["wind", "deg"]),
            visibility=to_meters(data.get("visibility")),
            cloud_cover=to_fraction(get_nested(data, ["clouds", "all"])),
        )

    def _hourly_point(self, item: Dict[str, Any]) -> HourlyPoint:
        main = item["main"]
        return HourlyPoint(
            time=from_epoch(item["dt"]),
            temperature=float(main["temp"]),
            condition=condition_from_owm(_weather(item).get("id")),
            apparent_temperature=main.get("feels_like"),
            precipitation_chance=to_fraction(item.get("pop"), scale=1.0),
            precipitation_amount=_precip_amount(item),
            humidity=to_fraction(main.get("humidity")),
            pressure=main.get("pressure"),
            wind_speed=get_nested(item, ["wind", "speed"]),
            wind_direction=get_nested(item, ["wind", "deg"]),
            visibility=to_meters(item.get("visibility")),
            cloud_cover=to_fraction(get_nested(item, ["clouds", "all"])),
        )

    def group_by_day(
        self,
        items: List[Dict[str, Any]],
        current: Dict[str, Any],
        tz_name: str,
    ) -> List[DailyPoint]:
        """
        Group 3-hour items into local calendar days.

        High/low come from the extremes of the day's items, the condition
        from the middle item, the precipitation chance is the mean. The
        /weather response only knows today's sunrise and sunset, so they
        are attached to today alone.
        """
        try:
            tz = ZoneInfo(tz_name or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"[OpenWeatherMapProvider] Unknown timezone {tz_name!r}, grouping in UTC")
            tz = ZoneInfo("UTC")

        grouped: Dict[date, List[Dict[str, Any]]] = {}
        for item in items:
            local_day = from_epoch(item["dt"]).astimezone(tz).date()
            grouped.setdefault(local_day, []).append(item)

        today = from_epoch(current["dt"]).astimezone(tz).date() if current.get("dt") else None
        sys_block = current.get("sys") or {}

        days: List[DailyPoint] = []
        for local_day in sorted(grouped):
            day_items = grouped[local_day]
            highs = [get_nested(i, ["main", "temp_max"], i["main"]["temp"]) for i in day_items]
            lows = [get_nested(i, ["main", "temp_min"], i["main"]["temp"]) for i in day_items]
            midday = day_items[len(day_items) // 2]
            pops = [i.get("pop") or 0.0 for i in day_items]
            amounts = [a for a in map(_precip_amount, day_items) if a is not None]
            is_today = local_day == today

            days.append(DailyPoint(
                date=datetime(local_day.year, local_day.month, local_day.day, tzinfo=tz).astimezone(timezone.utc),
                high_temperature=float(max(highs)),
                low_temperature=float(min(lows)),
                condition=condition_from_owm(_weather(midday).get("id")),
                condition_description=_description(midday),
                precipitation_chance=to_fraction(sum(pops) / len(pops), scale=1.0),
                precipitation_amount=sum(amounts) if amounts else None,
                sunrise=from_epoch(sys_block.get("sunrise")) if is_today else None,
                sunset=from_epoch(sys_block.get("sunset")) if is_today else None,
                humidity=to_fraction(get_nested(midday, ["main", "humidity"])),
                pressure=get_nested(midday, ["main", "pressure"]),
                wind_speed=get_nested(midday, ["wind", "speed"]),
            ))

        logger.debug(f"[OpenWeatherMapProvider] Grouped {len(items)} items into {len(days)} days")
        return days


if __name__ == "__main__":
    from sky_compare.config import configure_logging

    configure_logging()

    async def test():
        provider = OpenWeatherMapProvider(Settings.from_env())
        location = Location(37.6391, -120.9969, "Modesto, CA", "America/Los_Angeles", country_code="US")
        if not provider.is_applicable(location):
            print("Set OWM_API_KEY first")
            return
        record = await provider.fetch(location)
        print(f"\nOWM current: {record.current.temperature:.1f}C {record.current.condition_description}")
        for day in record.daily:
            print(f"  {day.date.date()}: {day.high_temperature:.1f}/{day.low_temperature:.1f}C {day.condition_description}")

    asyncio.run(test())
