"""
Shared plumbing for provider adapters.

Adapters do not inherit from a common base class. Each one is an
independent implementation of the WeatherProvider protocol and uses the
helpers here for the parts every provider has in common: opening an
httpx client, issuing a JSON GET with retry, and turning parse errors
into MALFORMED_RESPONSE failures.
"""

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, TypeVar, runtime_checkable

import httpx

from sky_compare.models import Location, ProviderId, ProviderRecord
from sky_compare.resilience import (
    FailureKind,
    ProviderError,
    RetryConfig,
    error_from_status,
    retry_async,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


@runtime_checkable
class WeatherProvider(Protocol):
    """Common interface every provider adapter implements."""

    provider_id: ProviderId

    def is_applicable(self, location: Location) -> bool:
        ...

    async def fetch(self, location: Location) -> ProviderRecord:
        """Return a normalized record, or raise ProviderError."""
        ...


@asynccontextmanager
async def open_client(
    client: Optional[httpx.AsyncClient],
    timeout: float,
    headers: Optional[Dict[str, str]] = None,
):
    """Yield the injected client, or a short-lived one owned by this call."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout, headers=headers) as owned:
        yield owned


async def request_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 30.0,
    retry: Optional[RetryConfig] = None,
) -> Any:
    """
    GET a JSON document, retrying transient failures.

    Raises:
        ProviderError: categorized failure after retries are exhausted
    """
    async def _once() -> Any:
        logger.debug(f"[{provider}] GET {url}")
        resp = await client.get(url, params=params, headers=headers, timeout=timeout)
        if not 200 <= resp.status_code < 300:
            logger.warning(f"[{provider}] HTTP {resp.status_code} from {url}")
            raise error_from_status(resp.status_code, provider, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(
                FailureKind.MALFORMED_RESPONSE,
                f"Invalid JSON from {url}: {e}",
                provider,
                resp.status_code,
            ) from e

    return await retry_async(_once, provider_name=provider, config=retry)


@contextmanager
def parsing(provider: str) -> Iterator[None]:
    """Convert errors raised while reading a 2xx payload into MALFORMED_RESPONSE."""
    try:
        yield
    except ProviderError:
        raise
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"[{provider}] Could not parse response: {type(e).__name__}: {e}")
        raise ProviderError(
            FailureKind.MALFORMED_RESPONSE,
            f"Parse error: {type(e).__name__}: {str(e)[:200]}",
            provider,
        ) from e


def get_nested(data: Any, path: Sequence[str], default: Any = None) -> Any:
    """Walk nested dicts, returning default as soon as a key is missing."""
    current = data
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return default if current is None else current


def truncate(points: List[T], limit: int) -> List[T]:
    return list(points[:limit])
