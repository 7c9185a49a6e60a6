"""
Configuration for Sky Compare

Credentials and tuning knobs are read once from the environment (and an
optional .env file) into an immutable Settings object. The aggregator,
cache and adapters receive Settings at construction time; nothing reads
the environment at request time.

Environment variables:
    OWM_API_KEY                    - OpenWeatherMap
    TOMORROW_API_KEY               - Tomorrow.io
    WEATHERKIT_TOKEN               - Apple WeatherKit REST bearer token
    GOOGLE_WEATHER_PROXY_URL       - Google Weather proxy base URL
    GOOGLE_WEATHER_PROXY_KEY       - Google Weather proxy key (X-API-Key)
    SKY_COMPARE_CACHE_TTL          - cache TTL in seconds (default 3600)
    SKY_COMPARE_REQUEST_TIMEOUT    - per adapter call timeout (default 30)
    SKY_COMPARE_AGGREGATE_TIMEOUT  - fetch_all timeout (default 45)
    SKY_COMPARE_MAX_RETRIES        - retries per HTTP call (default 2)
    SKY_COMPARE_CACHE_DIR          - persist the cache as JSON files here
    SKY_COMPARE_USER_AGENT         - User-Agent sent to every provider
    LOG_LEVEL                      - logging level (default INFO)
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from sky_compare.resilience import RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "(sky-compare, github.com/sky-compare/sky-compare)"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_str(name: str) -> str:
    return os.getenv(name, "").strip()


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[Settings] Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


@dataclass(frozen=True)
class Settings:
    """Read-only configuration shared by adapters, cache and aggregator."""
    owm_api_key: str = ""
    tomorrow_api_key: str = ""
    weatherkit_token: str = ""
    google_proxy_url: str = ""
    google_proxy_key: str = ""

    cache_ttl_seconds: float = 3600.0
    request_timeout_seconds: float = 30.0
    aggregate_timeout_seconds: Optional[float] = 45.0
    cache_dir: Optional[Path] = None
    user_agent: str = DEFAULT_USER_AGENT

    # Contractual windows the rest of the system assumes
    hourly_limit: int = 24
    daily_limit: int = 10

    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build Settings from environment variables (after loading .env)."""
        load_dotenv(env_file)

        retry = RetryConfig(max_retries=int(_env_float("SKY_COMPARE_MAX_RETRIES", 2)))
        cache_dir = _env_str("SKY_COMPARE_CACHE_DIR")

        settings = cls(
            owm_api_key=_env_str("OWM_API_KEY"),
            tomorrow_api_key=_env_str("TOMORROW_API_KEY"),
            weatherkit_token=_env_str("WEATHERKIT_TOKEN"),
            google_proxy_url=_env_str("GOOGLE_WEATHER_PROXY_URL").rstrip("/"),
            google_proxy_key=_env_str("GOOGLE_WEATHER_PROXY_KEY"),
            cache_ttl_seconds=_env_float("SKY_COMPARE_CACHE_TTL", 3600.0),
            request_timeout_seconds=_env_float("SKY_COMPARE_REQUEST_TIMEOUT", 30.0),
            aggregate_timeout_seconds=_env_float("SKY_COMPARE_AGGREGATE_TIMEOUT", 45.0),
            cache_dir=Path(cache_dir) if cache_dir else None,
            user_agent=_env_str("SKY_COMPARE_USER_AGENT") or DEFAULT_USER_AGENT,
            retry=retry,
        )
        logger.info(f"[Settings] Loaded; credentials present for: {', '.join(settings.configured_sources()) or 'none'}")
        return settings

    def configured_sources(self) -> list:
        """Names of credentialed providers that have what they need."""
        names = []
        if self.weatherkit_token:
            names.append("weatherkit")
        if self.google_proxy_url and self.google_proxy_key:
            names.append("google")
        if self.owm_api_key:
            names.append("openweathermap")
        if self.tomorrow_api_key:
            names.append("tomorrow_io")
        return names


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure root logging the same way for library users and scripts.

    Args:
        level: Logging level name; defaults to LOG_LEVEL or INFO
        log_file: Optional path of a UTF-8 log file to append to
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode='a', encoding='utf-8'))

    logging.basicConfig(
        level=level or os.getenv("LOG_LEVEL", "INFO"),
        format=LOG_FORMAT,
        handlers=handlers,
    )
