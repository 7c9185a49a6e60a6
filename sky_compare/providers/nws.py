"""
National Weather Service (NWS) Provider for Sky Compare

Fetches official US government forecasts from api.weather.gov.
Three dependent calls:
1. /points/{lat},{lon} resolves the gridpoint forecast URLs
2. 'forecast' (day/night Periods) and 'forecastHourly' are then
   fetched concurrently

Coverage: US only (ISO country code), assumed applicable when the
country is unknown. NWS never reports pressure or a feels-like
temperature; those fields stay absent.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, TypedDict

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
    compass_to_degrees,
    condition_from_nws,
    parse_wind_speed_text,
    to_celsius,
    to_fraction,
)
from sky_compare.providers.base import get_nested, open_client, parsing, request_json, truncate
from sky_compare.resilience import FailureKind, ProviderError

logger = logging.getLogger(__name__)


class NWSValue(TypedDict, total=False):
    unitCode: str
    value: Optional[float]


class NWSPeriod(TypedDict, total=False):
    number: int
    name: str
    startTime: str
    endTime: str
    isDaytime: bool
    temperature: int
    temperatureUnit: str
    windSpeed: str
    windDirection: str
    shortForecast: str
    detailedForecast: str
    probabilityOfPrecipitation: NWSValue
    dewpoint: NWSValue
    relativeHumidity: NWSValue


def _wmo_unit(unit_code: Optional[str]) -> Optional[str]:
    # "wmoUnit:degC" -> "degC"
    if not unit_code:
        return None
    return unit_code.split(":")[-1]


class NWSProvider:
    """
    Provider for National Weather Service forecast data.

    Resolves the gridpoint for the location, then pulls the Period
    forecast (for daily high/low) and the hourly forecast in parallel.
    """

    provider_id = ProviderId.NWS
    attribution = DEFAULT_ATTRIBUTIONS[ProviderId.NWS]
    BASE_URL = "https://api.weather.gov"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        logger.info("[NWSProvider] Initializing provider...")
        self.settings = settings
        self.client = client
        # Required User-Agent per NWS API policy
        self.headers = {
            "User-Agent": settings.user_agent,
            "Accept": "application/geo+json",
        }

    def is_applicable(self, location: Location) -> bool:
        if not location.country_code:
            return True  # Assume US when the country is not known
        return location.country_code.upper() == "US"

    async def fetch(self, location: Location) -> ProviderRecord:
        name = self.provider_id.value
        logger.info(f"[NWSProvider] Fetching forecast for {location.name}...")

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            points_url = f"{self.BASE_URL}/points/{location.latitude:.4f},{location.longitude:.4f}"
            points = await self._get(client, points_url)

            with parsing(name):
                forecast_url = points["properties"]["forecast"]
                hourly_url = points["properties"]["forecastHourly"]

            forecast, hourly = await asyncio.gather(
                self._get(client, forecast_url),
                self._get(client, hourly_url),
            )

        with parsing(name):
            record = self._to_record(
                get_nested(forecast, ["properties", "periods"], []),
                get_nested(hourly, ["properties", "periods"], []),
            )

        logger.info(
            f"[NWSProvider] Retrieved {len(record.hourly)} hourly / {len(record.daily)} daily records"
        )
        return record

    async def _get(self, client: httpx.AsyncClient, url: str):
        return await request_json(
            client,
            url,
            provider=self.provider_id.value,
            headers=self.headers,
            timeout=self.settings.request_timeout_seconds,
            retry=self.settings.retry,
        )

    def _to_record(self, periods: List[NWSPeriod], hourly_periods: List[NWSPeriod]) -> ProviderRecord:
        if not hourly_periods:
            raise ProviderError(
                FailureKind.MALFORMED_RESPONSE,
                "No hourly periods in response",
                self.provider_id.value,
            )

        # Current conditions come from the earliest hour
        pairs = sorted(((self._hourly_point(p), p) for p in hourly_periods), key=lambda pair: pair[0].time)
        hourly = [point for point, _ in pairs]
        first, first_period = pairs[0]
        current = CurrentConditions(
            observed_at=first.time,
            temperature=first.temperature,
            apparent_temperature=first.temperature,  # NWS has no feels-like
            condition=first.condition,
            condition_description=first_period.get("shortForecast", ""),
            humidity=first.humidity,
            pressure=None,
            wind_speed=first.wind_speed,
            wind_direction=first.wind_direction,
            dew_point=first.dew_point,
        )

        return ProviderRecord(
            provider=self.provider_id,
            current=current,
            hourly=truncate(hourly, self.settings.hourly_limit),
            daily=truncate(self.pair_day_night(periods), self.settings.daily_limit),
            attribution=self.attribution,
        )

    @staticmethod
    def _period_time(period: NWSPeriod) -> datetime:
        start = parse_instant(period.get("startTime"))
        if start is None:
            raise ValueError(f"Period {period.get('name')!r} has no startTime")
        return start

    @staticmethod
    def _period_temperature(period: NWSPeriod) -> float:
        temp = to_celsius(period["temperature"], period.get("temperatureUnit", "F"))
        if temp is None:
            raise ValueError(f"Period {period.get('name')!r} has no temperature")
        return temp

    def _hourly_point(self, period: NWSPeriod) -> HourlyPoint:
        dewpoint = period.get("dewpoint") or {}
        return HourlyPoint(
            time=self._period_time(period),
            temperature=self._period_temperature(period),
            condition=condition_from_nws(period.get("shortForecast")),
            precipitation_chance=to_fraction(get_nested(period, ["probabilityOfPrecipitation", "value"])),
            humidity=to_fraction(get_nested(period, ["relativeHumidity", "value"])),
            wind_speed=parse_wind_speed_text(period.get("windSpeed")),
            wind_direction=compass_to_degrees(period.get("windDirection")),
            dew_point=to_celsius(dewpoint.get("value"), _wmo_unit(dewpoint.get("unitCode")) or "C"),
        )

    def pair_day_night(self, periods: List[NWSPeriod]) -> List[DailyPoint]:
        """
        Combine NWS day/night Periods into daily points.

        A daytime Period followed by a night Period becomes one day;
        a lone Period (e.g. "Tonight" first) stands on its own with the
        same value as high and low.
        """
        days: List[DailyPoint] = []
        i = 0
        while i < len(periods):
            period = periods[i]
            night: Optional[NWSPeriod] = None
            if period.get("isDaytime") and i + 1 < len(periods) and not periods[i + 1].get("isDaytime"):
                night = periods[i + 1]
                i += 2
            else:
                i += 1

            temps = [self._period_temperature(period)]
            chances = [to_fraction(get_nested(period, ["probabilityOfPrecipitation", "value"]))]
            if night is not None:
                temps.append(self._period_temperature(night))
                chances.append(to_fraction(get_nested(night, ["probabilityOfPrecipitation", "value"])))
            known_chances = [c for c in chances if c is not None]

            days.append(DailyPoint(
                date=self._period_time(period),
                high_temperature=max(temps),
                low_temperature=min(temps),
                condition=condition_from_nws(period.get("shortForecast")),
                condition_description=period.get("shortForecast", ""),
                precipitation_chance=max(known_chances) if known_chances else None,
                humidity=to_fraction(get_nested(period, ["relativeHumidity", "value"])),
                wind_speed=parse_wind_speed_text(period.get("windSpeed")),
            ))

        logger.debug(f"[NWSProvider] Paired {len(periods)} periods into {len(days)} days")
        return days


if __name__ == "__main__":
    from sky_compare.config import configure_logging

    configure_logging()

    async def test():
        provider = NWSProvider(Settings.from_env())
        record = await provider.fetch(Location(37.6391, -120.9969, "Modesto, CA", "America/Los_Angeles", country_code="US"))
        print(f"\nNWS current: {record.current.temperature:.1f}C {record.current.condition.description}")
        for point in record.hourly[:6]:
            print(f"  {point.time.isoformat()}: {point.temperature:.1f}C")
        for day in record.daily:
            print(f"  {day.date.date()}: {day.high_temperature:.1f}/{day.low_temperature:.1f}C {day.condition_description}")

    asyncio.run(test())
