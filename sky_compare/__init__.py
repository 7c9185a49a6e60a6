"""
Sky Compare: multi-source weather aggregation

Asks every weather provider that can answer for a location, normalizes
their heterogeneous responses into one schema, and reports how much
they disagree.

Architecture:
    providers/        - One adapter per provider:
                        * weatherkit.py      - Apple WeatherKit REST (Priority #1)
                        * google_weather.py  - Google Weather via proxy (Priority #2)
                        * nws.py             - National Weather Service, US only (Priority #3)
                        * openweathermap.py  - OpenWeatherMap (Priority #4)
                        * tomorrow_io.py     - Tomorrow.io timelines (Priority #5)
                        * open_meteo.py      - Open-Meteo, keyless (Priority #6)
    normalizer.py     - Unit and condition-code normalization
    resilience.py     - Failure taxonomy, retry with exponential backoff
    cache_manager.py  - Per-(location, provider) TTL cache
    aggregator.py     - Concurrent fan-out, partial failure, locality fallback
    comparison.py     - Cross-provider spread analysis
    geocoding.py      - Address/coordinate -> Location collaborator
    config.py         - Settings from environment, logging setup
"""

from sky_compare.aggregator import WeatherAggregator
from sky_compare.cache_manager import JsonFileStore, MemoryStore, WeatherCache
from sky_compare.comparison import ComparisonAnalyzer, ComparisonData
from sky_compare.config import Settings, configure_logging
from sky_compare.models import (
    PROVIDER_PRIORITY,
    CurrentConditions,
    DailyPoint,
    HourlyPoint,
    Location,
    ProviderFailure,
    ProviderId,
    ProviderRecord,
    WeatherCondition,
    WeatherSnapshot,
)
from sky_compare.resilience import FailureKind, NoProvidersSucceeded, ProviderError

__version__ = "1.0.0"

__all__ = [
    "WeatherAggregator",
    "WeatherCache",
    "MemoryStore",
    "JsonFileStore",
    "ComparisonAnalyzer",
    "ComparisonData",
    "Settings",
    "configure_logging",
    "PROVIDER_PRIORITY",
    "CurrentConditions",
    "DailyPoint",
    "HourlyPoint",
    "Location",
    "ProviderFailure",
    "ProviderId",
    "ProviderRecord",
    "WeatherCondition",
    "WeatherSnapshot",
    "FailureKind",
    "NoProvidersSucceeded",
    "ProviderError",
]
