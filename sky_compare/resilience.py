"""
Resilience Infrastructure for Sky Compare

Failure taxonomy and retry logic with exponential backoff for provider calls.
Conservative strategy: 2 retries max, 1-5 second delays.

Features:
- FailureKind taxonomy shared by adapters, aggregator and snapshot
- ProviderError carries the kind through retries and up to the aggregator
- with_retry decorator / retry_async helper for async calls
- Jitter to prevent thundering herd
- Unauthorized and rate-limited calls are never retried
"""

import asyncio
import functools
import json
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar('T')


class FailureKind(Enum):
    """Categories of provider failures."""
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    NOT_APPLICABLE = "not_applicable"
    NO_PROVIDERS_SUCCEEDED = "no_providers_succeeded"


# Server-side and network problems may clear up on their own
RETRYABLE_KINDS = (
    FailureKind.UNAVAILABLE,
    FailureKind.TRANSPORT,
    FailureKind.TIMEOUT,
)


class ProviderError(Exception):
    """A typed failure raised by a provider adapter."""

    def __init__(
        self,
        kind: FailureKind,
        message: str = "",
        provider: str = "unknown",
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.provider = provider
        self.status_code = status_code
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return self.kind in RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"ProviderError({self.kind.value!r}, {self.message!r}, provider={self.provider!r})"


class NoProvidersSucceeded(Exception):
    """Terminal state: no provider produced data, even after the locality fallback."""

    kind = FailureKind.NO_PROVIDERS_SUCCEEDED

    def __init__(self, location_name: str, failures: Optional[Dict[str, str]] = None):
        self.location_name = location_name
        self.failures = failures or {}
        detail = ", ".join(f"{name}: {reason}" for name, reason in self.failures.items())
        message = f"No weather provider returned data for {location_name}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


@dataclass
class RetryConfig:
    """Configuration for retry behavior - Conservative defaults."""
    max_retries: int = 2  # 2 retries = 3 total attempts
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True  # Add randomness to prevent thundering herd

    # HTTP status codes that should NOT trigger retry
    non_retryable_status_codes: tuple = (400, 401, 403, 404, 422, 429)

    # HTTP status codes that SHOULD trigger retry
    retryable_status_codes: tuple = (408, 500, 502, 503, 504)


DEFAULT_RETRY_CONFIG = RetryConfig()


def error_from_status(status_code: int, provider: str = "unknown", body: str = "") -> ProviderError:
    """Map a non-2xx HTTP status onto the failure taxonomy."""
    detail = f"HTTP {status_code}"
    if body:
        detail = f"{detail}: {body[:200]}"

    if status_code in (401, 403):
        return ProviderError(FailureKind.UNAUTHORIZED, detail, provider, status_code)
    if status_code == 429:
        return ProviderError(FailureKind.RATE_LIMITED, detail, provider, status_code)
    if status_code == 408 or status_code >= 500:
        return ProviderError(FailureKind.UNAVAILABLE, detail, provider, status_code)
    # Remaining 4xx: the request itself is wrong, repeating it will not help
    return ProviderError(FailureKind.UNAVAILABLE, detail, provider, status_code, retryable=False)


def categorize_error(exception: BaseException, provider: str = "unknown") -> ProviderError:
    """
    Turn any exception raised during a provider call into a ProviderError.

    Returns:
        ProviderError with the matching FailureKind
    """
    if isinstance(exception, ProviderError):
        return exception

    error_msg = str(exception)[:200]  # Truncate long messages

    if isinstance(exception, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ProviderError(FailureKind.TIMEOUT, f"Timeout: {error_msg or 'request timed out'}", provider)

    if isinstance(exception, httpx.HTTPStatusError):
        return error_from_status(exception.response.status_code, provider, exception.response.text)

    if isinstance(exception, httpx.RequestError):
        return ProviderError(FailureKind.TRANSPORT, f"Request error: {error_msg}", provider)

    if isinstance(exception, (json.JSONDecodeError, KeyError, ValueError, TypeError, IndexError)):
        return ProviderError(FailureKind.MALFORMED_RESPONSE, f"Parse error: {error_msg}", provider)

    return ProviderError(
        FailureKind.UNAVAILABLE,
        f"{type(exception).__name__}: {error_msg}",
        provider,
        retryable=False,
    )


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay with exponential backoff and optional jitter.

    Args:
        attempt: The retry attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = min(
        config.base_delay_seconds * (config.exponential_base ** attempt),
        config.max_delay_seconds
    )

    if config.jitter:
        # Add up to 25% jitter
        jitter_amount = delay * 0.25 * random.random()
        delay += jitter_amount

    return delay


def is_retryable_error(error: ProviderError, config: RetryConfig) -> bool:
    """Decide whether a categorized failure should trigger another attempt."""
    if error.status_code is not None:
        if error.status_code in config.non_retryable_status_codes:
            return False
        if error.status_code in config.retryable_status_codes:
            return True
    return error.retryable


def with_retry(
    config: Optional[RetryConfig] = None,
    provider_name: str = "unknown"
) -> Callable:
    """
    Decorator that adds retry logic with exponential backoff.

    Works with async functions only (all providers use async).
    Every exception is categorized; the last one is re-raised as a
    ProviderError once attempts run out or the failure is not retryable.

    Usage:
        @with_retry(provider_name="nws")
        async def fetch_points(self) -> dict:
            ...
    """
    if config is None:
        config = DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            last_error: Optional[ProviderError] = None
            start_time = time.time()

            for attempt in range(config.max_retries + 1):
                if attempt > 0:
                    delay = calculate_backoff_delay(attempt - 1, config)
                    logger.info(
                        f"[{provider_name}] Retry {attempt}/{config.max_retries} "
                        f"after {delay:.1f}s delay"
                    )
                    await asyncio.sleep(delay)

                try:
                    result = await func(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    last_error = categorize_error(e, provider_name)
                    if last_error is not e:
                        last_error.__cause__ = e

                    logger.warning(
                        f"[{provider_name}] Attempt {attempt + 1} failed: "
                        f"{last_error.kind.value} - {last_error.message}"
                    )

                    if not is_retryable_error(last_error, config):
                        logger.error(f"[{provider_name}] Error not retryable, giving up")
                        break
                    continue

                if attempt > 0:
                    elapsed = time.time() - start_time
                    logger.info(
                        f"[{provider_name}] Succeeded on attempt {attempt + 1} "
                        f"({elapsed:.2f}s total)"
                    )
                return result

            elapsed = time.time() - start_time
            logger.error(
                f"[{provider_name}] Giving up after {elapsed:.2f}s. "
                f"Last error: {last_error.kind.value if last_error else 'unknown'}"
            )
            if last_error is None:
                last_error = ProviderError(FailureKind.UNAVAILABLE, "no attempts made", provider_name)
            raise last_error

        return async_wrapper

    return decorator


async def retry_async(
    func: Callable,
    *args,
    provider_name: str = "unknown",
    config: Optional[RetryConfig] = None,
    **kwargs
) -> Any:
    """
    Execute an async function with retry logic.

    Returns:
        Result of func; raises ProviderError when every attempt fails
    """
    @with_retry(config=config, provider_name=provider_name)
    async def wrapper():
        return await func(*args, **kwargs)

    return await wrapper()
