"""
Unit & Condition Normalizer for Sky Compare

Pure, total functions that map each provider's native representation
into the canonical schema (Celsius, m/s, hPa, meters, fractions,
WeatherCondition). Nothing here raises: bad or missing input comes
back as None, unmapped condition codes come back as UNKNOWN.

Condition mapping strategies per provider:
- WeatherKit:      condition code names (PartlyCloudy, HeavyRain, ...)
- Google Weather:  keyword match on upper-snake types (LIGHT_RAIN, ...)
- NWS:             keyword match on the free-text shortForecast
- OpenWeatherMap:  numeric id ranges (2xx thunder, 5xx rain, ...)
- Tomorrow.io:     numeric weather codes (1000 clear, 4001 rain, ...)
- Open-Meteo:      WMO weather codes (0 clear, 61 rain, ...)
"""

import logging
import math
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from sky_compare.models import ProviderId, WeatherCondition

logger = logging.getLogger(__name__)

C = WeatherCondition

# Codes already reported as unmapped, so each one is logged once.
# Capped, since free-text NWS forecasts make the key space open-ended.
MAX_REPORTED_UNMAPPED = 256
_reported_unmapped = set()


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _unit_key(unit: Any) -> Optional[str]:
    if unit is None:
        return None
    if not isinstance(unit, str):
        return ""  # matches no table entry, so the value is dropped
    return unit.strip().lower().replace(" ", "").replace("_", "")


def _convert(value: Any, unit: Optional[str], table: Dict[str, Callable[[float], float]], quantity: str) -> Optional[float]:
    number = _as_float(value)
    if number is None:
        return None
    key = _unit_key(unit)
    if key is None:
        return number
    converter = table.get(key)
    if converter is None:
        logger.warning(f"[normalizer] Unknown {quantity} unit {unit!r}, dropping value")
        return None
    return converter(number)


_TEMPERATURE_UNITS: Dict[str, Callable[[float], float]] = {
    "c": lambda v: v,
    "celsius": lambda v: v,
    "degc": lambda v: v,
    "f": lambda v: (v - 32) * 5 / 9,
    "fahrenheit": lambda v: (v - 32) * 5 / 9,
    "degf": lambda v: (v - 32) * 5 / 9,
    "k": lambda v: v - 273.15,
    "kelvin": lambda v: v - 273.15,
}

_SPEED_UNITS: Dict[str, Callable[[float], float]] = {
    "m/s": lambda v: v,
    "ms": lambda v: v,
    "meterspersecond": lambda v: v,
    "km/h": lambda v: v / 3.6,
    "kmh": lambda v: v / 3.6,
    "kph": lambda v: v / 3.6,
    "kilometersperhour": lambda v: v / 3.6,
    "mph": lambda v: v * 0.44704,
    "milesperhour": lambda v: v * 0.44704,
    "kn": lambda v: v * 0.514444,
    "knots": lambda v: v * 0.514444,
}

_PRESSURE_UNITS: Dict[str, Callable[[float], float]] = {
    "hpa": lambda v: v,
    "mb": lambda v: v,
    "mbar": lambda v: v,
    "millibars": lambda v: v,
    "pa": lambda v: v / 100,
    "kpa": lambda v: v * 10,
    "inhg": lambda v: v / 0.02953,
}

_DISTANCE_UNITS: Dict[str, Callable[[float], float]] = {
    "m": lambda v: v,
    "meters": lambda v: v,
    "km": lambda v: v * 1000,
    "kilometers": lambda v: v * 1000,
    "mi": lambda v: v / 0.000621371,
    "miles": lambda v: v / 0.000621371,
}


def to_celsius(value: Any, unit: Optional[str] = "C") -> Optional[float]:
    return _convert(value, unit, _TEMPERATURE_UNITS, "temperature")


def to_meters_per_second(value: Any, unit: Optional[str] = "m/s") -> Optional[float]:
    return _convert(value, unit, _SPEED_UNITS, "speed")


def to_hectopascals(value: Any, unit: Optional[str] = "hPa") -> Optional[float]:
    return _convert(value, unit, _PRESSURE_UNITS, "pressure")


def to_meters(value: Any, unit: Optional[str] = "m") -> Optional[float]:
    return _convert(value, unit, _DISTANCE_UNITS, "distance")


_PRECIPITATION_UNITS: Dict[str, Callable[[float], float]] = {
    "mm": lambda v: v,
    "millimeters": lambda v: v,
    "cm": lambda v: v * 10,
    "in": lambda v: v * 25.4,
    "inches": lambda v: v * 25.4,
}


def to_millimeters(value: Any, unit: Optional[str] = "mm") -> Optional[float]:
    return _convert(value, unit, _PRECIPITATION_UNITS, "precipitation")


def to_fraction(value: Any, scale: float = 100.0) -> Optional[float]:
    """Percent (or any 0..scale value) to a clamped 0-1 fraction."""
    number = _as_float(value)
    if number is None:
        return None
    return min(max(number / scale, 0.0), 1.0)


def celsius_to_fahrenheit(celsius: float) -> float:
    return celsius * 9 / 5 + 32


def meters_per_second_to_mph(speed: float) -> float:
    return speed * 2.23694


_WIND_SPEED_TEXT = re.compile(r"(\d+(?:\.\d+)?)\s*(?:to\s*\d+(?:\.\d+)?\s*)?(mph|km/h|kt|kn|m/s)?", re.I)


def parse_wind_speed_text(text: Optional[str]) -> Optional[float]:
    """
    Parse NWS-style wind strings ("10 mph", "10 to 15 mph") into m/s.

    The lower bound of a range is used.
    """
    if not text:
        return None
    match = _WIND_SPEED_TEXT.search(text)
    if not match:
        return None
    unit = match.group(2) or "mph"
    if unit.lower() == "kt":
        unit = "kn"
    return to_meters_per_second(match.group(1), unit)


_COMPASS_POINTS = [
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
]


def compass_to_degrees(cardinal: Optional[str]) -> Optional[float]:
    if not cardinal:
        return None
    try:
        return _COMPASS_POINTS.index(cardinal.strip().upper()) * 22.5
    except ValueError:
        return None


_MOON_PHASES = {
    "new": 0.0,
    "newmoon": 0.0,
    "waxingcrescent": 0.125,
    "firstquarter": 0.25,
    "waxinggibbous": 0.375,
    "full": 0.5,
    "fullmoon": 0.5,
    "waninggibbous": 0.625,
    "lastquarter": 0.75,
    "thirdquarter": 0.75,
    "waningcrescent": 0.875,
}


def moon_phase_from_name(name: Optional[str]) -> Optional[float]:
    """Map a phase name (FULL_MOON, waxingCrescent, ...) onto 0-1, 0 = new, 0.5 = full."""
    if not name:
        return None
    return _MOON_PHASES.get(name.replace("_", "").replace(" ", "").lower())


def _unmapped(provider: ProviderId, code: Any) -> WeatherCondition:
    key = (provider, repr(code))
    if code is None or key in _reported_unmapped:
        return C.UNKNOWN
    if len(_reported_unmapped) < MAX_REPORTED_UNMAPPED:
        _reported_unmapped.add(key)
        logger.warning(f"[normalizer] Unmapped {provider.value} condition {code!r} -> unknown")
    else:
        logger.debug(f"[normalizer] Unmapped {provider.value} condition {code!r} -> unknown")
    return C.UNKNOWN


def _match_keywords(text: str, rules: List[Tuple[Tuple[str, ...], WeatherCondition]]) -> Optional[WeatherCondition]:
    for keywords, condition in rules:
        if any(k in text for k in keywords):
            return condition
    return None


# -- WeatherKit ---------------------------------------------------------------

WEATHERKIT_CONDITIONS: Dict[str, WeatherCondition] = {
    "clear": C.CLEAR,
    "mostlyclear": C.CLEAR,
    "frigid": C.CLEAR,
    "hot": C.CLEAR,
    "partlycloudy": C.PARTLY_CLOUDY,
    "mostlycloudy": C.CLOUDY,
    "cloudy": C.CLOUDY,
    "foggy": C.FOG,
    "haze": C.HAZE,
    "smoky": C.SMOKE,
    "blowingdust": C.DUST,
    "breezy": C.WIND,
    "windy": C.WIND,
    "drizzle": C.DRIZZLE,
    "rain": C.RAIN,
    "sunshowers": C.RAIN,
    "heavyrain": C.HEAVY_RAIN,
    "isolatedthunderstorms": C.THUNDERSTORM,
    "scatteredthunderstorms": C.THUNDERSTORM,
    "strongstorms": C.THUNDERSTORM,
    "thunderstorms": C.THUNDERSTORM,
    "flurries": C.LIGHT_SNOW,
    "sunflurries": C.LIGHT_SNOW,
    "snow": C.SNOW,
    "heavysnow": C.HEAVY_SNOW,
    "blowingsnow": C.HEAVY_SNOW,
    "blizzard": C.HEAVY_SNOW,
    "sleet": C.SLEET,
    "hail": C.SLEET,
    "wintrymix": C.SLEET,
    "mixedrainandsleet": C.SLEET,
    "mixedrainandsnow": C.SLEET,
    "mixedsnowandsleet": C.SLEET,
    "freezingdrizzle": C.FREEZING_RAIN,
    "freezingrain": C.FREEZING_RAIN,
    "hurricane": C.HURRICANE,
    "tropicalstorm": C.TROPICAL_STORM,
    "tornado": C.TORNADO,
}


def condition_from_weatherkit(code: Optional[str]) -> WeatherCondition:
    if not isinstance(code, str) or not code:
        return _unmapped(ProviderId.WEATHERKIT, code) if code else C.UNKNOWN
    mapped = WEATHERKIT_CONDITIONS.get(code.replace("_", "").lower())
    return mapped or _unmapped(ProviderId.WEATHERKIT, code)


# -- Google Weather -----------------------------------------------------------
# Reference: https://developers.google.com/maps/documentation/weather/reference/weather-condition-codes

GOOGLE_KEYWORDS: List[Tuple[Tuple[str, ...], WeatherCondition]] = [
    (("thunder",), C.THUNDERSTORM),
    (("tornado",), C.TORNADO),
    (("hurricane",), C.HURRICANE),
    (("tropical",), C.TROPICAL_STORM),
    (("freezing",), C.FREEZING_RAIN),
    (("hail", "sleet", "rain_and_snow"), C.SLEET),
    (("heavy_snow", "blowing_snow", "blizzard"), C.HEAVY_SNOW),
    (("light_snow", "flurries"), C.LIGHT_SNOW),
    (("snow",), C.SNOW),
    (("heavy_rain",), C.HEAVY_RAIN),
    (("drizzle", "light_rain"), C.DRIZZLE),
    (("rain", "showers"), C.RAIN),
    (("fog",), C.FOG),
    (("haze",), C.HAZE),
    (("dust",), C.DUST),
    (("smoke",), C.SMOKE),
    (("wind", "breezy"), C.WIND),
    (("partly_cloudy", "mostly_clear"), C.PARTLY_CLOUDY),
    (("mostly_cloudy", "cloudy"), C.CLOUDY),
    (("overcast",), C.OVERCAST),
    (("clear", "sunny"), C.CLEAR),
]


def condition_from_google(code: Optional[str]) -> WeatherCondition:
    if not isinstance(code, str) or not code:
        return _unmapped(ProviderId.GOOGLE, code) if code else C.UNKNOWN
    mapped = _match_keywords(code.lower(), GOOGLE_KEYWORDS)
    return mapped or _unmapped(ProviderId.GOOGLE, code)


# -- NWS ----------------------------------------------------------------------

NWS_KEYWORDS: List[Tuple[Tuple[str, ...], WeatherCondition]] = [
    (("tornado",), C.TORNADO),
    (("hurricane",), C.HURRICANE),
    (("tropical storm",), C.TROPICAL_STORM),
    (("thunder", "t-storm"), C.THUNDERSTORM),
    (("freezing rain", "freezing drizzle"), C.FREEZING_RAIN),
    (("sleet", "wintry mix", "rain and snow"), C.SLEET),
    (("heavy snow", "blizzard", "blowing snow"), C.HEAVY_SNOW),
    (("light snow", "flurries"), C.LIGHT_SNOW),
    (("snow",), C.SNOW),
    (("heavy rain",), C.HEAVY_RAIN),
    (("drizzle", "light rain"), C.DRIZZLE),
    (("rain", "showers"), C.RAIN),
    (("fog",), C.FOG),
    (("smoke",), C.SMOKE),
    (("haze",), C.HAZE),
    (("dust",), C.DUST),
    (("mostly cloudy",), C.CLOUDY),
    (("partly",), C.PARTLY_CLOUDY),
    (("overcast",), C.OVERCAST),
    (("cloudy",), C.CLOUDY),
    (("clear", "sunny"), C.CLEAR),
    (("wind", "breezy", "blustery"), C.WIND),
]


def condition_from_nws(short_forecast: Optional[str]) -> WeatherCondition:
    if not isinstance(short_forecast, str) or not short_forecast:
        return _unmapped(ProviderId.NWS, short_forecast) if short_forecast else C.UNKNOWN
    mapped = _match_keywords(short_forecast.lower(), NWS_KEYWORDS)
    return mapped or _unmapped(ProviderId.NWS, short_forecast)


# -- OpenWeatherMap -----------------------------------------------------------
# Reference: https://openweathermap.org/weather-conditions

OWM_RANGES: List[Tuple[int, int, WeatherCondition]] = [
    (200, 232, C.THUNDERSTORM),
    (300, 321, C.DRIZZLE),
    (500, 501, C.RAIN),
    (502, 504, C.HEAVY_RAIN),
    (511, 511, C.FREEZING_RAIN),
    (520, 531, C.RAIN),
    (600, 600, C.LIGHT_SNOW),
    (601, 601, C.SNOW),
    (602, 602, C.HEAVY_SNOW),
    (611, 616, C.SLEET),
    (620, 620, C.LIGHT_SNOW),
    (621, 622, C.SNOW),
    (701, 701, C.FOG),
    (711, 711, C.SMOKE),
    (721, 721, C.HAZE),
    (731, 731, C.DUST),
    (741, 741, C.FOG),
    (751, 762, C.DUST),
    (771, 771, C.WIND),
    (781, 781, C.TORNADO),
    (800, 800, C.CLEAR),
    (801, 802, C.PARTLY_CLOUDY),
    (803, 803, C.CLOUDY),
    (804, 804, C.OVERCAST),
]


def condition_from_owm(code: Any) -> WeatherCondition:
    number = _as_float(code)
    if number is None:
        return C.UNKNOWN
    for low, high, condition in OWM_RANGES:
        if low <= number <= high:
            return condition
    return _unmapped(ProviderId.OPEN_WEATHER_MAP, code)


# -- Tomorrow.io --------------------------------------------------------------
# Reference: https://docs.tomorrow.io/reference/data-layers-weather-codes

TOMORROW_CODES: Dict[int, Tuple[WeatherCondition, str]] = {
    1000: (C.CLEAR, "Clear"),
    1100: (C.CLEAR, "Mostly Clear"),
    1101: (C.PARTLY_CLOUDY, "Partly Cloudy"),
    1102: (C.CLOUDY, "Mostly Cloudy"),
    1001: (C.CLOUDY, "Cloudy"),
    2000: (C.FOG, "Fog"),
    2100: (C.FOG, "Light Fog"),
    4000: (C.DRIZZLE, "Drizzle"),
    4001: (C.RAIN, "Rain"),
    4200: (C.DRIZZLE, "Light Rain"),
    4201: (C.HEAVY_RAIN, "Heavy Rain"),
    5000: (C.SNOW, "Snow"),
    5001: (C.LIGHT_SNOW, "Flurries"),
    5100: (C.LIGHT_SNOW, "Light Snow"),
    5101: (C.HEAVY_SNOW, "Heavy Snow"),
    6000: (C.FREEZING_RAIN, "Freezing Drizzle"),
    6001: (C.FREEZING_RAIN, "Freezing Rain"),
    6200: (C.FREEZING_RAIN, "Light Freezing Rain"),
    6201: (C.FREEZING_RAIN, "Heavy Freezing Rain"),
    7000: (C.SLEET, "Ice Pellets"),
    7101: (C.SLEET, "Heavy Ice Pellets"),
    7102: (C.SLEET, "Light Ice Pellets"),
    8000: (C.THUNDERSTORM, "Thunderstorm"),
}


def condition_from_tomorrow(code: Any) -> WeatherCondition:
    number = _as_float(code)
    if number is None:
        return C.UNKNOWN
    entry = TOMORROW_CODES.get(int(number))
    return entry[0] if entry else _unmapped(ProviderId.TOMORROW_IO, code)


def tomorrow_description(code: Any) -> str:
    number = _as_float(code)
    entry = TOMORROW_CODES.get(int(number)) if number is not None else None
    return entry[1] if entry else "Unknown"


# -- Open-Meteo (WMO) ---------------------------------------------------------
# Reference: https://open-meteo.com/en/docs

WMO_CODES: Dict[int, Tuple[WeatherCondition, str]] = {
    0: (C.CLEAR, "Clear"),
    1: (C.CLEAR, "Mostly Clear"),
    2: (C.PARTLY_CLOUDY, "Partly Cloudy"),
    3: (C.OVERCAST, "Overcast"),
    45: (C.FOG, "Fog"),
    48: (C.FOG, "Fog"),
    51: (C.DRIZZLE, "Light Drizzle"),
    53: (C.DRIZZLE, "Drizzle"),
    55: (C.DRIZZLE, "Heavy Drizzle"),
    56: (C.FREEZING_RAIN, "Freezing Drizzle"),
    57: (C.FREEZING_RAIN, "Freezing Drizzle"),
    61: (C.RAIN, "Light Rain"),
    63: (C.RAIN, "Rain"),
    65: (C.HEAVY_RAIN, "Heavy Rain"),
    66: (C.FREEZING_RAIN, "Freezing Rain"),
    67: (C.FREEZING_RAIN, "Freezing Rain"),
    71: (C.LIGHT_SNOW, "Light Snow"),
    73: (C.SNOW, "Snow"),
    75: (C.HEAVY_SNOW, "Heavy Snow"),
    77: (C.SNOW, "Snow Grains"),
    80: (C.RAIN, "Light Showers"),
    81: (C.RAIN, "Showers"),
    82: (C.HEAVY_RAIN, "Heavy Showers"),
    85: (C.LIGHT_SNOW, "Snow Showers"),
    86: (C.HEAVY_SNOW, "Snow Showers"),
    95: (C.THUNDERSTORM, "Thunderstorm"),
    96: (C.THUNDERSTORM, "Thunderstorm"),
    99: (C.THUNDERSTORM, "Thunderstorm"),
}


def condition_from_wmo(code: Any) -> WeatherCondition:
    number = _as_float(code)
    if number is None:
        return C.UNKNOWN
    entry = WMO_CODES.get(int(number))
    return entry[0] if entry else _unmapped(ProviderId.OPEN_METEO, code)


def wmo_description(code: Any) -> str:
    number = _as_float(code)
    entry = WMO_CODES.get(int(number)) if number is not None else None
    return entry[1] if entry else "Unknown"


CONDITION_MAPPERS: Dict[ProviderId, Callable[[Any], WeatherCondition]] = {
    ProviderId.WEATHERKIT: condition_from_weatherkit,
    ProviderId.GOOGLE: condition_from_google,
    ProviderId.NWS: condition_from_nws,
    ProviderId.OPEN_WEATHER_MAP: condition_from_owm,
    ProviderId.TOMORROW_IO: condition_from_tomorrow,
    ProviderId.OPEN_METEO: condition_from_wmo,
}


def to_condition(provider: ProviderId, code: Any) -> WeatherCondition:
    """Map any provider's native condition code onto WeatherCondition."""
    mapper = CONDITION_MAPPERS.get(provider)
    if mapper is None:
        return C.UNKNOWN
    return mapper(code)
