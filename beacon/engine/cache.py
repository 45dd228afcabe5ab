"""
beacon.engine.cache — Short-TTL Stats Read Cache
=================================================

Dashboard reads (overview, pages) are cached for a few tens of seconds,
keyed by ``(namespace, project_id, fingerprint-of-params)``.  When the
aggregation scheduler finishes rebuilding a project's rollups it evicts
every entry of that project, whatever the namespace, so the next read
recomputes from fresh rollups.

The policy object (:class:`StatsCache`) is separate from the storage
(:class:`CacheStore`), so the TTL and the backing store can change
without touching the stats readers.

Usage::

    cache = StatsCache(MemoryCacheStore(), ttl_seconds=60)

    generation = cache.generation(project_id)
    value = cache.get("overview", project_id, params)
    if value is MISS:
        value = compute()
        cache.put("overview", project_id, params, value, generation)

    cache.invalidate_project(project_id)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


class _Miss:
    """Sentinel type for a cache miss (cached values may be falsy)."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


def fingerprint(params: Mapping[str, Any]) -> str:
    """Stable serialisation of query *params*, independent of key order."""
    return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
class CacheStore(Protocol):
    """Backing store for :class:`StatsCache`."""

    def get(self, key: CacheKey) -> Any: ...

    def set(self, key: CacheKey, value: Any, ttl_seconds: float) -> None: ...

    def delete_many(self, keys: Iterable[CacheKey]) -> None: ...

    def keys(self) -> list[CacheKey]: ...


class MemoryCacheStore:
    """Thread-safe in-process store with lazy expiry.

    Expired entries read as :data:`MISS` and are dropped on access;
    :meth:`purge_expired` sweeps the rest.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key → (expires_at, value)
        self._entries: dict[CacheKey, tuple[float, Any]] = {}

    def get(self, key: CacheKey) -> Any:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return MISS
            expires_at, value = item
            if expires_at <= self._clock():
                del self._entries[key]
                return MISS
            return value

    def set(self, key: CacheKey, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def delete_many(self, keys: Iterable[CacheKey]) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def keys(self) -> list[CacheKey]:
        with self._lock:
            return list(self._entries)

    def purge_expired(self) -> int:
        """Drop every expired entry; return how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------
class StatsCache:
    """Namespace/project-scoped TTL cache in front of rollup queries.

    Each project carries a generation counter that
    :meth:`invalidate_project` bumps.  A reader takes
    :meth:`generation` before querying and hands it to :meth:`put`; a
    result computed before an invalidation is then dropped instead of
    being stored over the fresh rollups.
    """

    def __init__(self, store: CacheStore | None = None, ttl_seconds: float = 60.0) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store: CacheStore = store if store is not None else MemoryCacheStore()
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()          # orders put against invalidate
        self._generations: dict[str, int] = {}

    @staticmethod
    def _key(namespace: str, project_id: str, params: Mapping[str, Any]) -> CacheKey:
        return (namespace, project_id, fingerprint(params))

    def generation(self, project_id: str) -> int:
        with self._lock:
            return self._generations.get(project_id, 0)

    def get(self, namespace: str, project_id: str, params: Mapping[str, Any]) -> Any:
        """Return the cached value or :data:`MISS`."""
        return self._store.get(self._key(namespace, project_id, params))

    def put(
        self,
        namespace: str,
        project_id: str,
        params: Mapping[str, Any],
        value: Any,
        generation: int | None = None,
    ) -> bool:
        """Store *value*; return False if it was dropped as stale.

        With *generation* set, the write only happens if the project has
        not been invalidated since that generation was read.
        """
        key = self._key(namespace, project_id, params)
        with self._lock:
            if generation is not None and generation != self._generations.get(project_id, 0):
                logger.debug(
                    "Stats cache: dropped stale %s result for project %s", namespace, project_id,
                )
                return False
            self._store.set(key, value, self.ttl_seconds)
        return True

    def invalidate_project(self, project_id: str) -> int:
        """Evict every entry belonging to *project_id*; return the count."""
        with self._lock:
            self._generations[project_id] = self._generations.get(project_id, 0) + 1
            doomed = [key for key in self._store.keys() if key[1] == project_id]
            self._store.delete_many(doomed)
        if doomed:
            logger.debug("Stats cache: evicted %d entries for project %s", len(doomed), project_id)
        return len(doomed)
