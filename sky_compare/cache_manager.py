"""
TTL Cache for Sky Compare

Keeps the last successful ProviderRecord per (location, provider) so
repeated fetches inside the TTL window never touch the network.

Layers:
- CacheStore: dumb key-value persistence of JSON-ready dicts. It knows
  nothing about time. MemoryStore for a process, JsonFileStore for one
  JSON file per key on disk.
- WeatherCache: enforces the TTL on read, serializes access per key and
  counts hits/misses for analytics.

Stale entries are invisible: get() returns None for an expired entry
exactly as it does for a missing one.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from sky_compare.models import ProviderId, ProviderRecord, parse_instant, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0


def cache_key(location_key: str, provider: ProviderId) -> str:
    """Filesystem-safe key for one (location, provider) pair."""
    return f"{location_key.replace(',', '_')}__{provider.value}"


@dataclass
class CacheEntry:
    """Cached record with its expiry metadata."""
    location_key: str
    provider: ProviderId
    cached_at: datetime
    expires_at: datetime
    record: ProviderRecord

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def age_minutes(self, now: datetime) -> float:
        return (now - self.cached_at).total_seconds() / 60

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location_key": self.location_key,
            "provider": self.provider.value,
            "cached_at": self.cached_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "record": self.record.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry":
        return cls(
            location_key=raw["location_key"],
            provider=ProviderId(raw["provider"]),
            cached_at=parse_instant(raw["cached_at"]),
            expires_at=parse_instant(raw["expires_at"]),
            record=ProviderRecord.from_dict(raw["record"]),
        )


class CacheStore(Protocol):
    """Key-value persistence used by WeatherCache."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def set(self, key: str, value: Dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class MemoryStore:
    """In-process store. Values are copied through JSON so callers never share state."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        encoded = json.dumps(value, default=str)
        with self._lock:
            self._data[key] = encoded

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


class JsonFileStore:
    """One UTF-8 JSON file per key under `directory`."""

    SUFFIX = ".json"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"[JsonFileStore] Cache directory: {self.directory.absolute()}")

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}{self.SUFFIX}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def set(self, key: str, value: Dict[str, Any]) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(value, f, indent=2, default=str)
        # Readers see either the old file or the new one, never half a write
        os.replace(tmp, path)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob(f"*{self.SUFFIX}"))


class WeatherCache:
    """
    TTL cache of ProviderRecords keyed by (location key, provider).

    Thread-safe and usable from concurrent asyncio tasks: every read or
    write of a key happens under that key's own lock, so operations on
    one key are linearizable while unrelated keys never contend.

    Args:
        store: Persistence backend (defaults to MemoryStore)
        ttl_seconds: Default time-to-live for put()
        clock: Returns the current aware datetime; injectable for tests
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store if store is not None else MemoryStore()
        self.ttl_seconds = ttl_seconds
        self.clock = clock or utc_now

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "expired": 0, "corrupted": 0}
        self._stats_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        """Load an entry; unreadable entries are dropped and reported as absent. Caller holds the key lock."""
        try:
            raw = self.store.get(key)
            return CacheEntry.from_dict(raw) if raw is not None else None
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"[WeatherCache] Discarding unreadable entry {key}: {type(e).__name__}: {e}")
            self._count("corrupted")
            self.store.delete(key)
            return None

    def get(self, location_key: str, provider: ProviderId) -> Optional[ProviderRecord]:
        """Return the cached record if present and unexpired, else None."""
        key = cache_key(location_key, provider)
        with self._lock_for(key):
            entry = self._read_entry(key)
            now = self.clock()

            if entry is None:
                self._count("misses")
                return None
            if entry.is_expired(now):
                self._count("expired")
                self._count("misses")
                logger.debug(f"[WeatherCache] {key}: expired {entry.age_minutes(now):.1f} min after caching")
                return None

            self._count("hits")
            logger.debug(f"[WeatherCache] {key}: hit ({entry.age_minutes(now):.1f} min old)")
            return entry.record

    def put(
        self,
        location_key: str,
        provider: ProviderId,
        record: ProviderRecord,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """Unconditionally overwrite the entry for (location_key, provider)."""
        key = cache_key(location_key, provider)
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock_for(key):
            now = self.clock()
            entry = CacheEntry(
                location_key=location_key,
                provider=provider,
                cached_at=now,
                expires_at=now + timedelta(seconds=ttl),
                record=record,
            )
            self.store.set(key, entry.to_dict())
            self._count("writes")
        logger.debug(f"[WeatherCache] {key}: stored for {ttl:.0f}s")

    def invalidate(self, location_key: str, provider: ProviderId) -> None:
        key = cache_key(location_key, provider)
        with self._lock_for(key):
            self.store.delete(key)

    def sweep_expired(self) -> int:
        """Remove every entry whose expiry is at or before now. Returns the count removed."""
        removed = 0
        for key in self.store.keys():
            with self._lock_for(key):
                entry = self._read_entry(key)
                if entry is not None and entry.is_expired(self.clock()):
                    self.store.delete(key)
                    removed += 1
        if removed:
            logger.info(f"[WeatherCache] Swept {removed} expired entries")
        return removed

    def clear_all(self) -> None:
        keys = self.store.keys()
        for key in keys:
            with self._lock_for(key):
                self.store.delete(key)
        logger.info(f"[WeatherCache] Cleared {len(keys)} entries")

    def stats(self) -> Dict[str, Any]:
        """Hit/miss counters plus hit rate, for analytics."""
        with self._stats_lock:
            summary: Dict[str, Any] = dict(self._stats)
        lookups = summary["hits"] + summary["misses"]
        summary["hit_rate"] = round(summary["hits"] / lookups * 100, 1) if lookups else 0.0
        summary["entries"] = len(self.store.keys())
        return summary
