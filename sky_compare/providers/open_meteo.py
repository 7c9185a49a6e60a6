"""
Open-Meteo Weather Provider for Sky Compare

Open-Meteo is keyless and global, so it is always applicable and acts
as the provider of last resort. A single forecast call returns current,
hourly and daily blocks; times are requested as unix seconds and wind
as m/s so only percentages and WMO codes need converting.
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
    from_epoch,
)
from sky_compare.normalizer import condition_from_wmo, to_fraction, to_meters, wmo_description
from sky_compare.providers.base import open_client, parsing, request_json, truncate

logger = logging.getLogger(__name__)

CURRENT_FIELDS = [
    "temperature_2m", "apparent_temperature", "relative_humidity_2m",
    "weather_code", "surface_pressure", "wind_speed_10m",
    "wind_direction_10m", "cloud_cover", "dew_point_2m", "uv_index",
    "visibility",
]
HOURLY_FIELDS = [
    "temperature_2m", "apparent_temperature", "precipitation_probability",
    "precipitation", "relative_humidity_2m", "weather_code",
    "surface_pressure", "wind_speed_10m", "wind_direction_10m",
    "uv_index", "visibility", "cloud_cover", "dew_point_2m",
]
DAILY_FIELDS = [
    "weather_code", "temperature_2m_max", "temperature_2m_min",
    "precipitation_probability_max", "precipitation_sum", "sunrise",
    "sunset", "wind_speed_10m_max", "uv_index_max",
]


def _column(block: Dict[str, List[Any]], name: str, i: int) -> Any:
    values = block.get(name) or []
    return values[i] if i < len(values) else None


class OpenMeteoProvider:
    """Provider for the Open-Meteo forecast API (no key required)."""

    provider_id = ProviderId.OPEN_METEO
    attribution = DEFAULT_ATTRIBUTIONS[ProviderId.OPEN_METEO]
    BASE_URL = "https://api.open-meteo.com/v1/forecast"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        logger.info("[OpenMeteoProvider] Initializing provider...")
        self.settings = settings
        self.client = client

    def is_applicable(self, location: Location) -> bool:
        return True

    def build_params(self, location: Location) -> Dict[str, Any]:
        return {
            "latitude": location.latitude,
            "longitude": location.longitude,
            "current": ",".join(CURRENT_FIELDS),
            "hourly": ",".join(HOURLY_FIELDS),
            "daily": ",".join(DAILY_FIELDS),
            "timezone": location.timezone or "auto",
            "timeformat": "unixtime",
            "wind_speed_unit": "ms",
            "forecast_hours": self.settings.hourly_limit,
            "forecast_days": self.settings.daily_limit,
        }

    async def fetch(self, location: Location) -> ProviderRecord:
        logger.info(f"[OpenMeteoProvider] Fetching forecast for {location.name}...")
        params = self.build_params(location)
        logger.debug(f"[OpenMeteoProvider] Request params: {params}")

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            data = await request_json(
                client,
                self.BASE_URL,
                provider=self.provider_id.value,
                params=params,
                headers={"User-Agent": self.settings.user_agent},
                timeout=self.settings.request_timeout_seconds,
                retry=self.settings.retry,
            )

        with parsing(self.provider_id.value):
            record = ProviderRecord(
                provider=self.provider_id,
                current=self._current(data["current"]),
                hourly=truncate(self._hourly(data.get("hourly") or {}), self.settings.hourly_limit),
                daily=truncate(self._daily(data.get("daily") or {}), self.settings.daily_limit),
                attribution=self.attribution,
            )

        logger.info(
            f"[OpenMeteoProvider] Retrieved {len(record.hourly)} hourly / {len(record.daily)} daily records"
        )
        return record

    def _current(self, block: Dict[str, Any]) -> CurrentConditions:
        code = block.get("weather_code")
        return CurrentConditions(
            observed_at=from_epoch(block["time"]),
            temperature=float(block["temperature_2m"]),
            apparent_temperature=float(block.get("apparent_temperature", block["temperature_2m"])),
            condition=condition_from_wmo(code),
            condition_description=wmo_description(code),
            humidity=to_fraction(block.get("relative_humidity_2m")),
            pressure=block.get("surface_pressure"),
            wind_speed=block.get("wind_speed_10m"),
            wind_direction=block.get("wind_direction_10m"),
            uv_index=block.get("uv_index"),
            visibility=to_meters(block.get("visibility")),
            cloud_cover=to_fraction(block.get("cloud_cover")),
            dew_point=block.get("dew_point_2m"),
        )

    def _hourly(self, block: Dict[str, List[Any]]) -> List[HourlyPoint]:
        points: List[HourlyPoint] = []
        for i, epoch in enumerate(block.get("time") or []):
            temp = _column(block, "temperature_2m", i)
            if temp is None:
                logger.debug(f"[OpenMeteoProvider] Skipping hour {epoch}: no temperature")
                continue
            points.append(HourlyPoint(
                time=from_epoch(epoch),
                temperature=float(temp),
                condition=condition_from_wmo(_column(block, "weather_code", i)),
                apparent_temperature=_column(block, "apparent_temperature", i),
                precipitation_chance=to_fraction(_column(block, "precipitation_probability", i)),
                precipitation_amount=_column(block, "precipitation", i),
                humidity=to_fraction(_column(block, "relative_humidity_2m", i)),
                pressure=_column(block, "surface_pressure", i),
                wind_speed=_column(block, "wind_speed_10m", i),
                wind_direction=_column(block, "wind_direction_10m", i),
                uv_index=_column(block, "uv_index", i),
                visibility=to_meters(_column(block, "visibility", i)),
                cloud_cover=to_fraction(_column(block, "cloud_cover", i)),
                dew_point=_column(block, "dew_point_2m", i),
            ))
        return points

    def _daily(self, block: Dict[str, List[Any]]) -> List[DailyPoint]:
        days: List[DailyPoint] = []
        for i, epoch in enumerate(block.get("time") or []):
            high = _column(block, "temperature_2m_max", i)
            low = _column(block, "temperature_2m_min", i)
            if high is None or low is None:
                logger.debug(f"[OpenMeteoProvider] Skipping day {epoch}: no high/low")
                continue
            code = _column(block, "weather_code", i)
            days.append(DailyPoint(
                date=from_epoch(epoch),
                high_temperature=float(high),
                low_temperature=float(low),
                condition=condition_from_wmo(code),
                condition_description=wmo_description(code),
                precipitation_chance=to_fraction(_column(block, "precipitation_probability_max", i)),
                precipitation_amount=_column(block, "precipitation_sum", i),
                sunrise=from_epoch(_column(block, "sunrise", i)),
                sunset=from_epoch(_column(block, "sunset", i)),
                wind_speed=_column(block, "wind_speed_10m_max", i),
                uv_index=_column(block, "uv_index_max", i),
            ))
        return days


if __name__ == "__main__":
    from sky_compare.config import configure_logging

    configure_logging()

    async def test():
        provider = OpenMeteoProvider(Settings.from_env())
        record = await provider.fetch(Location(37.6391, -120.9969, "Modesto, CA", "America/Los_Angeles"))
        print(f"\nOpen-Meteo current: {record.current.temperature:.1f}C {record.current.condition_description}")
        for day in record.daily:
            print(f"  {day.date.date()}: {day.high_temperature:.1f}/{day.low_temperature:.1f}C {day.condition_description}")

    asyncio.run(test())
