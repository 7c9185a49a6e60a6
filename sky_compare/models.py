"""
Domain model for Sky Compare

Every provider adapter emits the same canonical records:
- Temperatures in Celsius
- Wind speed in m/s, direction in degrees
- Pressure in hPa, visibility in meters
- Humidity, cloud cover, precipitation chance as fractions (0-1)
- Timestamps as timezone-aware UTC datetimes

Absent measurements stay None; they are never silently zeroed.
"""

import logging
import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sky_compare.resilience import FailureKind, NoProvidersSucceeded, ProviderError

logger = logging.getLogger(__name__)

# Two decimals of a degree is roughly 1.1 km of latitude
LOCATION_KEY_PRECISION = 2


class InvalidCoordinate(ValueError):
    """Latitude/longitude outside [-90, 90] x [-180, 180]."""


class WeatherCondition(Enum):
    """Closed set of canonical weather conditions."""
    CLEAR = "clear"
    PARTLY_CLOUDY = "partly_cloudy"
    CLOUDY = "cloudy"
    OVERCAST = "overcast"
    RAIN = "rain"
    DRIZZLE = "drizzle"
    HEAVY_RAIN = "heavy_rain"
    FREEZING_RAIN = "freezing_rain"
    THUNDERSTORM = "thunderstorm"
    SNOW = "snow"
    LIGHT_SNOW = "light_snow"
    HEAVY_SNOW = "heavy_snow"
    SLEET = "sleet"
    FOG = "fog"
    HAZE = "haze"
    WIND = "wind"
    DUST = "dust"
    SMOKE = "smoke"
    TORNADO = "tornado"
    HURRICANE = "hurricane"
    TROPICAL_STORM = "tropical_storm"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        if self is WeatherCondition.WIND:
            return "Windy"
        return self.value.replace("_", " ").title()


class ProviderId(Enum):
    """Known weather providers."""
    WEATHERKIT = "weatherkit"
    GOOGLE = "google"
    NWS = "nws"
    OPEN_WEATHER_MAP = "openweathermap"
    TOMORROW_IO = "tomorrow_io"
    OPEN_METEO = "open_meteo"


# Most authoritative first. Drives primary-source selection and result ordering.
PROVIDER_PRIORITY: List[ProviderId] = [
    ProviderId.WEATHERKIT,
    ProviderId.GOOGLE,
    ProviderId.NWS,
    ProviderId.OPEN_WEATHER_MAP,
    ProviderId.TOMORROW_IO,
    ProviderId.OPEN_METEO,
]

DEFAULT_ATTRIBUTIONS: Dict[ProviderId, str] = {
    ProviderId.WEATHERKIT: "Weather data provided by Apple WeatherKit",
    ProviderId.GOOGLE: "Weather data provided by Google Weather",
    ProviderId.NWS: "Weather data provided by NOAA National Weather Service",
    ProviderId.OPEN_WEATHER_MAP: "Weather data provided by OpenWeatherMap",
    ProviderId.TOMORROW_IO: "Weather data provided by Tomorrow.io",
    ProviderId.OPEN_METEO: "Weather data provided by Open-Meteo.com",
}


def priority_rank(provider: ProviderId) -> int:
    return PROVIDER_PRIORITY.index(provider)


def sort_by_priority(providers) -> List[ProviderId]:
    return sorted(providers, key=priority_rank)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string into an aware UTC datetime.

    Accepts a trailing 'Z', fractional seconds of any length and
    naive strings (treated as UTC). Returns None for empty input.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"

    # fromisoformat only accepts up to 6 fractional digits before 3.11
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def from_epoch(seconds: Optional[float]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


# Field names holding datetimes, shared by the (de)serializers below
_DATETIME_FIELDS = {"observed_at", "time", "date", "sunrise", "sunset"}


def _to_dict(obj) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        out[f.name] = value
    return out


def _decode_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name in _DATETIME_FIELDS:
            value = parse_instant(value)
        elif f.name == "condition":
            value = WeatherCondition(value)
        kwargs[f.name] = value
    return kwargs


@dataclass(frozen=True)
class Location:
    """
    An immutable geographic location.

    The id is derived from rounded coordinates so repeated lookups of the
    same place share cache entries.
    """
    latitude: float
    longitude: float
    name: str = ""
    timezone: str = "UTC"
    country: Optional[str] = None
    country_code: Optional[str] = None  # ISO 3166-1 alpha-2
    region: Optional[str] = None        # State/Province
    locality: Optional[str] = None      # City

    def __post_init__(self):
        if isinstance(self.latitude, bool) or isinstance(self.longitude, bool):
            raise InvalidCoordinate(f"Coordinates must be numbers, got ({self.latitude!r}, {self.longitude!r})")
        try:
            lat, lon = float(self.latitude), float(self.longitude)
        except (TypeError, ValueError) as e:
            raise InvalidCoordinate(
                f"Coordinates must be numbers, got ({self.latitude!r}, {self.longitude!r})"
            ) from e
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise InvalidCoordinate(f"Coordinates must be finite numbers, got ({lat}, {lon})")
        object.__setattr__(self, "latitude", lat)
        object.__setattr__(self, "longitude", lon)
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            raise InvalidCoordinate(f"Coordinates out of range: ({lat}, {lon})")
        if not self.name:
            object.__setattr__(self, "name", f"{lat}, {lon}")

    @property
    def id(self) -> str:
        # Adding 0.0 folds -0.0 into 0.0 so both hemispheres of zero share a key
        lat = round(self.latitude, LOCATION_KEY_PRECISION) + 0.0
        lon = round(self.longitude, LOCATION_KEY_PRECISION) + 0.0
        return f"{lat:.{LOCATION_KEY_PRECISION}f},{lon:.{LOCATION_KEY_PRECISION}f}"

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(**_decode_fields(cls, data))


@dataclass
class CurrentConditions:
    observed_at: datetime
    temperature: float
    apparent_temperature: float
    condition: WeatherCondition
    condition_description: str = ""
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    uv_index: Optional[float] = None
    visibility: Optional[float] = None
    cloud_cover: Optional[float] = None
    dew_point: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CurrentConditions":
        return cls(**_decode_fields(cls, data))


@dataclass
class HourlyPoint:
    time: datetime
    temperature: float
    condition: WeatherCondition
    apparent_temperature: Optional[float] = None
    precipitation_chance: Optional[float] = None
    precipitation_amount: Optional[float] = None  # mm
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    uv_index: Optional[float] = None
    visibility: Optional[float] = None
    cloud_cover: Optional[float] = None
    dew_point: Optional[float] = None

    @property
    def temperature_fahrenheit(self) -> float:
        return self.temperature * 9 / 5 + 32

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HourlyPoint":
        return cls(**_decode_fields(cls, data))


@dataclass
class DailyPoint:
    date: datetime
    high_temperature: float
    low_temperature: float
    condition: WeatherCondition
    condition_description: str = ""
    precipitation_chance: Optional[float] = None
    precipitation_amount: Optional[float] = None
    sunrise: Optional[datetime] = None
    sunset: Optional[datetime] = None
    moon_phase: Optional[float] = None  # 0 = new, 0.5 = full
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    wind_speed: Optional[float] = None
    uv_index: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyPoint":
        return cls(**_decode_fields(cls, data))


@dataclass
class ProviderRecord:
    """Normalized result of one successful provider call."""
    provider: ProviderId
    current: CurrentConditions
    hourly: List[HourlyPoint] = field(default_factory=list)
    daily: List[DailyPoint] = field(default_factory=list)
    attribution: str = ""

    def __post_init__(self):
        if not self.attribution:
            self.attribution = DEFAULT_ATTRIBUTIONS.get(self.provider, self.provider.value)
        self.hourly = sorted(self.hourly, key=lambda p: p.time)
        self.daily = sorted(self.daily, key=lambda p: p.date)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "current": self.current.to_dict(),
            "hourly": [p.to_dict() for p in self.hourly],
            "daily": [p.to_dict() for p in self.daily],
            "attribution": self.attribution,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderRecord":
        return cls(
            provider=ProviderId(data["provider"]),
            current=CurrentConditions.from_dict(data["current"]),
            hourly=[HourlyPoint.from_dict(p) for p in data.get("hourly", [])],
            daily=[DailyPoint.from_dict(p) for p in data.get("daily", [])],
            attribution=data.get("attribution", ""),
        )


@dataclass(frozen=True)
class ProviderFailure:
    """A non-fatal provider error, kept on the snapshot for display and retry."""
    kind: FailureKind
    message: str = ""

    @classmethod
    def from_error(cls, error: ProviderError) -> "ProviderFailure":
        return cls(kind=error.kind, message=error.message)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


@dataclass
class WeatherSnapshot:
    """
    Aggregated, point-in-time result of querying every applicable provider.

    A provider id appears in at most one of `records` and `failures`.
    """
    location: Location
    records: Dict[ProviderId, ProviderRecord] = field(default_factory=dict)
    failures: Dict[ProviderId, ProviderFailure] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=utc_now)

    def record_success(self, record: ProviderRecord) -> None:
        self.records[record.provider] = record
        self.failures.pop(record.provider, None)

    def record_failure(self, provider: ProviderId, failure: ProviderFailure) -> None:
        self.failures[provider] = failure
        self.records.pop(provider, None)

    @property
    def is_empty(self) -> bool:
        return not self.records

    @property
    def available_sources(self) -> List[ProviderId]:
        """Successful providers, most authoritative first."""
        return sort_by_priority(self.records)

    @property
    def primary_source(self) -> Optional[ProviderId]:
        # Only providers with a successful record are eligible
        sources = self.available_sources
        return sources[0] if sources else None

    @property
    def primary_record(self) -> Optional[ProviderRecord]:
        source = self.primary_source
        return self.records[source] if source else None

    def record_for(self, provider: ProviderId) -> Optional[ProviderRecord]:
        return self.records.get(provider)

    def require_data(self) -> "WeatherSnapshot":
        """Return self, or raise NoProvidersSucceeded when nothing succeeded."""
        if self.is_empty:
            raise NoProvidersSucceeded(
                self.location.name,
                {p.value: str(f) for p, f in self.failures.items()},
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location.to_dict(),
            "records": {p.value: self.records[p].to_dict() for p in self.available_sources},
            "failures": {
                p.value: {"kind": f.kind.value, "message": f.message}
                for p, f in self.failures.items()
            },
            "fetched_at": self.fetched_at.isoformat(),
            "primary_source": self.primary_source.value if self.primary_source else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeatherSnapshot":
        return cls(
            location=Location.from_dict(data["location"]),
            records={
                ProviderId(key): ProviderRecord.from_dict(value)
                for key, value in data.get("records", {}).items()
            },
            failures={
                ProviderId(key): ProviderFailure(FailureKind(value["kind"]), value.get("message", ""))
                for key, value in data.get("failures", {}).items()
            },
            fetched_at=parse_instant(data["fetched_at"]) or utc_now(),
        )
