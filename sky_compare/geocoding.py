"""
Geocoding for Sky Compare

Resolves place names to Locations and coordinates back to named places.
The aggregator uses it for the locality fallback round; callers use it
for initial location resolution.

Accepted address formats:
- City only: "Seattle"
- City with qualifier: "San Francisco, CA" / "Paris, France"
- Coordinates: "37.7749,-122.4194" (short-circuits to reverse geocoding)

Backends (both keyless):
- Forward: Open-Meteo geocoding search
- Reverse: Nominatim (OpenStreetMap), with the IANA timezone taken from
  Open-Meteo's timezone=auto metadata, the two requests run concurrently
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

import httpx

from sky_compare import models
from sky_compare.config import Settings
from sky_compare.models import Location
from sky_compare.providers.base import open_client, request_json
from sky_compare.resilience import ProviderError

logger = logging.getLogger(__name__)


class GeocodingError(Exception):
    """Geocoding failed for a reason other than bad input."""


class NotFound(GeocodingError):
    """No place matches the query."""


class InvalidCoordinate(GeocodingError, models.InvalidCoordinate):
    """Coordinates outside [-90, 90] x [-180, 180]."""


class Geocoder(Protocol):
    async def geocode(self, address: str) -> Location:
        ...

    async def reverse_geocode(self, latitude: float, longitude: float) -> Location:
        ...


def parse_coordinates(text: str) -> Optional[Tuple[float, float]]:
    """
    Recognize "lat,lon" input.

    Returns None when the text is not two numbers separated by a comma.
    Raises InvalidCoordinate when it is, but the numbers are out of range.
    """
    parts = [p.strip() for p in text.strip().split(",")]
    if len(parts) != 2:
        return None
    try:
        lat, lon = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    _validate(lat, lon)
    return lat, lon


def _validate(latitude: float, longitude: float) -> None:
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        raise InvalidCoordinate(f"Coordinates out of range: ({latitude}, {longitude})")


def _display_name(*parts: Optional[str]) -> str:
    return ", ".join(p for p in parts if p)


@contextmanager
def _reading(what: str) -> Iterator[None]:
    """Turn errors raised while reading a geocoding payload into GeocodingError."""
    try:
        yield
    except GeocodingError:
        raise
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"[Geocoder] Could not parse {what} response: {type(e).__name__}: {e}")
        raise GeocodingError(f"Malformed {what} response: {type(e).__name__}: {str(e)[:200]}") from e


class OpenMeteoGeocoder:
    """Geocoder backed by Open-Meteo search and Nominatim reverse lookup."""

    SEARCH_URL = "https://geocoding-api.open-meteo.com/v1/search"
    REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
    TIMEZONE_URL = "https://api.open-meteo.com/v1/forecast"

    # Candidates fetched when a qualifier ("CA", "France") narrows the match
    CANDIDATES = 10

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or Settings()
        self.client = client

    async def _get(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> Any:
        try:
            return await request_json(
                client,
                url,
                provider="geocoding",
                params=params,
                headers={"User-Agent": self.settings.user_agent},
                timeout=self.settings.request_timeout_seconds,
                retry=self.settings.retry,
            )
        except ProviderError as e:
            raise GeocodingError(f"Geocoding request failed: {e}") from e

    async def geocode(self, address: str) -> Location:
        """Resolve an address string; "lat,lon" input goes straight to reverse_geocode."""
        text = address.strip()
        if not text:
            raise NotFound("Empty address")

        coordinates = parse_coordinates(text)
        if coordinates is not None:
            logger.debug(f"[Geocoder] {text!r} looks like coordinates, reverse geocoding")
            return await self.reverse_geocode(*coordinates)

        name, *qualifiers = [p.strip() for p in text.split(",") if p.strip()]
        logger.info(f"[Geocoder] Searching for {name!r} (qualifiers: {qualifiers or 'none'})")

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            data = await self._get(client, self.SEARCH_URL, {
                "name": name,
                "count": self.CANDIDATES if qualifiers else 1,
                "language": "en",
                "format": "json",
            })

        with _reading("search"):
            results = data.get("results") or []
            if not results:
                raise NotFound(f"No results for {address!r}")

            match = self._best_match(results, qualifiers)
            location = Location(
                latitude=float(match["latitude"]),
                longitude=float(match["longitude"]),
                name=_display_name(match.get("name"), match.get("admin1"), match.get("country")),
                timezone=match.get("timezone") or "UTC",
                country=match.get("country"),
                country_code=(match.get("country_code") or "").upper() or None,
                region=match.get("admin1"),
                locality=match.get("name"),
            )
        logger.info(f"[Geocoder] {address!r} -> {location.name} ({location.id})")
        return location

    @staticmethod
    def _best_match(results: List[Dict[str, Any]], qualifiers: List[str]) -> Dict[str, Any]:
        """First result whose region or country equals, or starts with, a qualifier."""
        wanted = [q.lower() for q in qualifiers]
        for result in results:
            names = [str(result.get(k)).lower() for k in ("admin1", "country", "country_code") if result.get(k)]
            if any(name == q or name.startswith(q) for name in names for q in wanted):
                return result
        return results[0]

    async def reverse_geocode(self, latitude: float, longitude: float) -> Location:
        """Resolve coordinates to a named Location."""
        _validate(latitude, longitude)
        logger.info(f"[Geocoder] Reverse geocoding ({latitude}, {longitude})")

        async with open_client(self.client, self.settings.request_timeout_seconds) as client:
            place, tz_name = await asyncio.gather(
                self._get(client, self.REVERSE_URL, {
                    "format": "jsonv2",
                    "lat": latitude,
                    "lon": longitude,
                    "zoom": 10,
                    "addressdetails": 1,
                }),
                self._timezone(client, latitude, longitude),
            )

        with _reading("reverse"):
            if not place or "error" in place:
                raise NotFound(f"No place at ({latitude}, {longitude})")

            address = place.get("address") or {}
            locality = address.get("city") or address.get("town") or address.get("village") or address.get("hamlet")
            region = address.get("state")
            country = address.get("country")

            return Location(
                latitude=latitude,
                longitude=longitude,
                name=_display_name(locality, region, country),
                timezone=tz_name,
                country=country,
                country_code=(address.get("country_code") or "").upper() or None,
                region=region,
                locality=locality,
            )

    async def _timezone(self, client: httpx.AsyncClient, latitude: float, longitude: float) -> str:
        try:
            data = await self._get(client, self.TIMEZONE_URL, {
                "latitude": latitude,
                "longitude": longitude,
                "timezone": "auto",
                "forecast_days": 1,
            })
        except GeocodingError as e:
            logger.warning(f"[Geocoder] Timezone lookup failed, using UTC: {e}")
            return "UTC"
        if not isinstance(data, dict):
            logger.warning("[Geocoder] Timezone lookup returned no object, using UTC")
            return "UTC"
        return data.get("timezone") or "UTC"
