"""
Bounded TTL cache for API responses, plus path-aware invalidation.

``ResponseCache`` stores GET results for the request orchestrator.
``CacheKeyIndex`` remembers which cache keys were populated under which
resource path so a mutation of ``orders/123`` can drop every cached read of
``orders`` and ``orders/123``.

Manifesto:
    - **Bounded:** ``max_size`` entries, oldest-by-creation evicted first
    - **TTL everywhere:** Every entry expires; expired entries are dropped on
      access and by a periodic sweep
    - **Segment-aware invalidation:** ``orders`` never touches ``orders2``

Architecture:
    ::

        ResponseCache                     CacheKeyIndex
        ├── set(key, value, ttl)          ├── add(path, key)
        ├── get(key) → value | default    ├── invalidate(path, cache) → int
        ├── has / delete / clear          ├── prune(cache) → int
        ├── stats()                       └── clear()
        ├── get_or_set / wrap
        └── sweep()  ← cleanup() + listeners every check_interval seconds

Examples:
    >>> cache = ResponseCache(max_size=100, default_ttl=60)
    >>> cache.set("orders:", [{"id": 1}])
    >>> cache.get("orders:")
    [{'id': 1}]
    >>> index = CacheKeyIndex()
    >>> index.add("orders", "orders:")
    >>> index.invalidate("orders/1", cache)
    1

Guardrails:
    ❌ DON'T: Use the index for lookups
    ✅ DO: Look entries up by key; the index only drives invalidation

Tags:
    cache, ttl, eviction, invalidation, in-memory
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from stateset.core.logging import get_logger

V = TypeVar("V")
R = TypeVar("R")

logger = get_logger(__name__)

_MISSING: Any = object()


@dataclass
class CacheEntry(Generic[V]):
    """One cached value and its bookkeeping."""

    value: V
    created_at: float
    expires_at: float
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class ResponseCache(Generic[V]):
    """Bounded in-memory cache with per-entry TTL.

    Evicts the single oldest entry (by ``created_at``) when full. Thread-safe
    for single-process use.

    Attributes:
        max_size: Maximum number of entries before eviction
        default_ttl: TTL in seconds used when ``set`` gets none
        check_interval: Seconds between background expiry sweeps
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        default_ttl: float = 300.0,
        check_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.check_interval = check_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self._misses = 0
        self._evictions = 0
        self._sweeper: asyncio.Task[None] | None = None
        self._sweep_listeners: list[Callable[[], Any]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def size(self) -> int:
        """Return current number of entries (expired ones included until swept)."""
        return len(self._entries)

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds (default TTL if ``None``)."""
        time_to_live = ttl if ttl is not None else self.default_ttl
        now = self._clock()

        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_oldest()
            self._entries[key] = CacheEntry(
                value=value,
                created_at=now,
                expires_at=now + time_to_live,
            )
            size = len(self._entries)

        self._ensure_sweeper()
        logger.debug("cache_set", key=key, ttl=time_to_live, cache_size=size)

    def get(self, key: str, default: Any = None) -> V | Any:
        """Return the live value for ``key``, or ``default`` if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug("cache_miss", key=key)
                return default

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                logger.debug("cache_expired", key=key)
                return default

            entry.hit_count += 1
            hits = entry.hit_count

        logger.debug("cache_hit", key=key, hits=hits)
        return entry.value

    def has(self, key: str) -> bool:
        """Check if ``key`` exists and has not expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns whether an entry was removed."""
        with self._lock:
            deleted = self._entries.pop(key, None) is not None
        if deleted:
            logger.debug("cache_delete", key=key)
        return deleted

    def clear(self) -> None:
        """Remove all entries."""
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        logger.info("cache_cleared", entries_cleared=cleared)

    def cleanup(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            remaining = len(self._entries)

        if expired:
            logger.debug(
                "cache_cleanup_completed",
                expired_entries=len(expired),
                remaining_entries=remaining,
            )
        return len(expired)

    def stats(self) -> dict[str, Any]:
        """Summarise cache usage.

        ``hit_rate`` is ``total_hits / (total_hits + size)``, an approximation
        that treats each stored entry as one initial miss.
        """
        with self._lock:
            entries = list(self._entries.values())
            misses = self._misses
            evictions = self._evictions

        total_hits = sum(entry.hit_count for entry in entries)
        size = len(entries)
        total_requests = total_hits + size
        return {
            "size": size,
            "max_size": self.max_size,
            "hit_rate": total_hits / total_requests if total_requests else 0.0,
            "total_hits": total_hits,
            "misses": misses,
            "evictions": evictions,
            "oldest_entry": min((e.created_at for e in entries), default=None),
            "newest_entry": max((e.created_at for e in entries), default=None),
        }

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[V]],
        ttl: float | None = None,
    ) -> V:
        """Cache-aside: return the cached value or compute, store and return it."""
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        try:
            value = await factory()
        except Exception:
            logger.error("cache_factory_failed", key=key, exc_info=True)
            raise
        self.set(key, value, ttl)
        return value

    def wrap(
        self,
        fn: Callable[..., Awaitable[V]],
        key_fn: Callable[..., str],
        ttl: float | None = None,
    ) -> Callable[..., Awaitable[V]]:
        """Return an async function that caches ``fn``'s results under ``key_fn(*args)``."""

        async def wrapper(*args: Any, **kwargs: Any) -> V:
            key = key_fn(*args, **kwargs)
            return await self.get_or_set(key, lambda: fn(*args, **kwargs), ttl)

        return wrapper

    # ------------------------------------------------------------------ #
    # Background sweep
    # ------------------------------------------------------------------ #

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        self._evictions += 1
        logger.debug("cache_evicted", key=oldest_key)

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop: expiry is still enforced on access.
            return
        self.start_cleanup()

    def start_cleanup(self) -> asyncio.Task[None]:
        """Start the periodic expiry sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_loop(), name="stateset-cache-sweep"
            )
        return self._sweeper

    def add_sweep_listener(self, listener: Callable[[], Any]) -> None:
        """Call ``listener()`` after every periodic sweep."""
        self._sweep_listeners.append(listener)

    def sweep(self) -> int:
        """Run one sweep: drop expired entries, then notify listeners."""
        removed = self.cleanup()
        for listener in self._sweep_listeners:
            try:
                listener()
            except Exception:
                logger.warning("cache_sweep_listener_failed", exc_info=True)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            self.sweep()

    async def close(self) -> None:
        """Stop the sweep and drop every entry."""
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and not sweeper.done():
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        self.clear()


# ---------------------------------------------------------------------- #
# Keys and path invalidation
# ---------------------------------------------------------------------- #


def normalize_path(path: str | None) -> str:
    """Strip the query string and leading/trailing slashes."""
    if not path:
        return ""
    return path.split("?", 1)[0].strip("/")


def paths_overlap(path_a: str, path_b: str) -> bool:
    """True when one path equals, or is a segment-prefix of, the other."""
    if path_a == path_b:
        return True
    if not path_a or not path_b:
        return False
    return path_a.startswith(f"{path_b}/") or path_b.startswith(f"{path_a}/")


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def build_cache_key(path: str, params: Mapping[str, Any] | None = None) -> str:
    """Derive ``path:canonical-json(params)``; empty params serialise to ``""``."""
    serialized = canonical_json(dict(params)) if params else ""
    return f"{path}:{serialized}"


class CacheKeyIndex:
    """Normalized resource path → cache keys populated under it.

    Entries can outlive the cache entries they point at (expiry, eviction);
    such stale keys are dropped by ``prune`` or when their path is invalidated.
    """

    def __init__(self) -> None:
        self._paths: dict[str, set[str]] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._paths)

    def add(self, normalized_path: str, key: str) -> None:
        if not normalized_path:
            return
        with self._lock:
            self._paths.setdefault(normalized_path, set()).add(key)

    def keys_for(self, normalized_path: str) -> set[str]:
        with self._lock:
            return set(self._paths.get(normalized_path, ()))

    def invalidate(self, normalized_path: str, cache: ResponseCache[Any]) -> int:
        """Delete every key indexed under an overlapping path. Returns entries removed."""
        if not normalized_path:
            return 0

        removed = 0
        with self._lock:
            matched = [p for p in self._paths if paths_overlap(normalized_path, p)]
            for stored_path in matched:
                for key in self._paths.pop(stored_path):
                    if cache.delete(key):
                        removed += 1

        if removed:
            logger.debug("cache_invalidated", path=normalized_path, removed_entries=removed)
        return removed

    def invalidate_many(self, paths: Iterable[str], cache: ResponseCache[Any]) -> int:
        return sum(self.invalidate(path, cache) for path in paths)

    def prune(self, cache: ResponseCache[Any]) -> int:
        """Forget keys no longer live in ``cache`` and paths left empty. Returns keys dropped."""
        dropped = 0
        with self._lock:
            for path, keys in list(self._paths.items()):
                live = {key for key in keys if cache.has(key)}
                dropped += len(keys) - len(live)
                if live:
                    self._paths[path] = live
                else:
                    del self._paths[path]
        return dropped

    def clear(self) -> None:
        with self._lock:
            self._paths.clear()


__all__ = [
    "CacheEntry",
    "ResponseCache",
    "CacheKeyIndex",
    "normalize_path",
    "paths_overlap",
    "canonical_json",
    "build_cache_key",
]
