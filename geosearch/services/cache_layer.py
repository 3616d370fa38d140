"""In-process TTL caches, one per query shape.

A `CacheLayer` is constructed explicitly and handed to the orchestrator; there
is no module-level cache state. Entries live until their TTL passes or the
shape is cleared, and an expired entry is still served when recomputing it
fails. Nothing here survives a process restart.
"""

import json
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog
from pydantic import BaseModel

from geosearch.core.config import settings
from geosearch.models.dto import Coordinate

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
ComputeFn = Callable[[], Awaitable[Any]]


class CacheName(str, Enum):
    ENTITIES = "entities"  # full entity list
    POSTAL_CODE = "postal-code"
    LOCATION = "location"
    TEXT = "text"
    FILTERED = "filtered"  # "all" searches per filter combination


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float

    def is_valid(self, now: float, ttl: float) -> bool:
        return now - self.stored_at < ttl


@dataclass(frozen=True)
class CacheRead:
    """A value read from a cache; `stale` is set when it outlived its TTL."""
    value: Any
    stored_at: float
    stale: bool = False


class TTLCache:
    """A single keyed cache with a fixed TTL, guarded by its own lock."""

    def __init__(self, name: str, ttl: float, clock: Clock = time.monotonic):
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def peek(self, key: str, ttl: Optional[float] = None) -> Optional[CacheRead]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        ttl = self.ttl if ttl is None else ttl
        return CacheRead(
            value=entry.value,
            stored_at=entry.stored_at,
            stale=not entry.is_valid(self._clock(), ttl),
        )

    def set(self, key: str, value: Any) -> CacheEntry:
        entry = CacheEntry(value=value, stored_at=self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        return dropped

    async def read_or_compute(self, key: str, compute: ComputeFn, ttl: Optional[float] = None) -> CacheRead:
        cached = self.peek(key, ttl)
        if cached is not None and not cached.stale:
            logger.debug("cache_hit", cache=self.name, key=key)
            return cached

        logger.debug("cache_miss", cache=self.name, key=key, expired=cached is not None)
        try:
            value = await compute()
        except Exception as e:
            if cached is None:
                raise
            # Last resort: an expired value beats no value
            logger.warning(
                "cache_serving_stale",
                cache=self.name,
                key=key,
                age_seconds=round(self._clock() - cached.stored_at, 1),
                error=str(e),
            )
            return cached

        entry = self.set(key, value)
        return CacheRead(value=value, stored_at=entry.stored_at)


class CacheLayer:
    """Independent TTL caches keyed per query shape.

    Lifecycle: build one per orchestrator, `clear()` it for explicit
    invalidation (e.g. after an admin write); it is discarded with the process.
    """

    def __init__(self, ttl: Optional[float] = None, clock: Clock = time.monotonic):
        self.ttl = settings.CACHE_TTL_SECONDS if ttl is None else ttl
        self._caches: Dict[CacheName, TTLCache] = {
            name: TTLCache(name.value, self.ttl, clock) for name in CacheName
        }

    def cache(self, name: Union[CacheName, str]) -> TTLCache:
        return self._caches[CacheName(name)]

    async def get_or_compute(
        self,
        name: Union[CacheName, str],
        key: str,
        compute: ComputeFn,
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value for `key`, running `compute` on a miss."""
        read = await self.read_or_compute(name, key, compute, ttl)
        return read.value

    async def read_or_compute(
        self,
        name: Union[CacheName, str],
        key: str,
        compute: ComputeFn,
        ttl: Optional[float] = None,
    ) -> CacheRead:
        """Like `get_or_compute`, but reports whether the value is stale."""
        return await self.cache(name).read_or_compute(key, compute, ttl)

    def peek(self, name: Union[CacheName, str], key: str) -> Optional[CacheRead]:
        return self.cache(name).peek(key)

    def clear(self, scope: Union[CacheName, str] = "all") -> int:
        """
        Drop cached entries for one shape, or for every shape with "all".

        Raises:
            ValueError: If `scope` names no known cache.
        """
        if scope == "all":
            dropped = sum(cache.clear() for cache in self._caches.values())
        else:
            dropped = self.cache(scope).clear()
        logger.info("cache_cleared", scope=str(getattr(scope, "value", scope)), dropped=dropped)
        return dropped

    def stats(self) -> Dict[str, Any]:
        return {
            "ttl_seconds": self.ttl,
            "entries": {name.value: len(cache) for name, cache in self._caches.items()},
        }


def coordinate_bucket(coordinate: Optional[Coordinate], precision: Optional[int] = None) -> str:
    """
    Round a coordinate into a key fragment so near-identical positions share a bucket.

    Precision guide (approximate at equator):
    - 2 decimal places: ~1.11 km
    - 3 decimal places: ~111 m
    - 4 decimal places: ~11 m
    """
    if coordinate is None:
        return ""
    precision = settings.CACHE_COORDINATE_PRECISION if precision is None else precision
    return f"{coordinate.latitude:.{precision}f},{coordinate.longitude:.{precision}f}"


def _key_part(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Coordinate):
        return coordinate_bucket(value)
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json", exclude_none=True), sort_keys=True)
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, str):
        return value.strip().lower()
    return str(value)


def query_key(shape: str, **parts: Any) -> str:
    """Deterministic cache key from a query's discriminating parameters."""
    body = "|".join(f"{name}={_key_part(value)}" for name, value in sorted(parts.items()))
    return f"{shape}:{body}"
