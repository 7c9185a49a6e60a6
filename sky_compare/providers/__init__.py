"""
Providers package for Sky Compare

One adapter per weather source, listed in priority order (most
authoritative first):

1. WeatherKit - Apple WeatherKit REST (bearer token)
2. Google Weather - Google Maps Platform via authenticating proxy
3. NWS - National Weather Service, US only, keyless
4. OpenWeatherMap - current + 5 day/3 hour forecast (API key)
5. Tomorrow.io - timelines API (API key)
6. Open-Meteo - global, keyless, provider of last resort

Every adapter implements the WeatherProvider protocol from
sky_compare.providers.base and raises ProviderError on failure.
"""

from typing import List, Optional

import httpx

from sky_compare.config import Settings
from sky_compare.providers.base import WeatherProvider
from sky_compare.providers.google_weather import GoogleWeatherProvider
from sky_compare.providers.nws import NWSProvider
from sky_compare.providers.open_meteo import OpenMeteoProvider
from sky_compare.providers.openweathermap import OpenWeatherMapProvider
from sky_compare.providers.tomorrow_io import TomorrowIOProvider
from sky_compare.providers.weatherkit import WeatherKitProvider


def build_providers(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> List[WeatherProvider]:
    """Instantiate every adapter, in priority order, sharing one optional client."""
    return [
        WeatherKitProvider(settings, client),
        GoogleWeatherProvider(settings, client),
        NWSProvider(settings, client),
        OpenWeatherMapProvider(settings, client),
        TomorrowIOProvider(settings, client),
        OpenMeteoProvider(settings, client),
    ]


__all__ = [
    "build_providers",
    "WeatherProvider",
    # WeatherKit (primary)
    "WeatherKitProvider",
    # Google Weather (proxy)
    "GoogleWeatherProvider",
    # NWS (US official)
    "NWSProvider",
    # OpenWeatherMap
    "OpenWeatherMapProvider",
    # Tomorrow.io
    "TomorrowIOProvider",
    # Open-Meteo (fallback)
    "OpenMeteoProvider",
]
