# core/cache.py
"""
Async TTL caches with single-flight population.

``SingleFlightCache.get_or_fetch`` guarantees that concurrent misses on one
key share a single fetch: the first caller starts it, everybody else awaits
the same task. Waiters are shielded from each other, so a caller that gives
up (cancellation, timeout) only stops waiting; the fetch finishes and is
stored for whoever asks next.

Locks come from a fixed-size shard table, so the number of lock objects does
not grow with the number of keys ever requested. A shard lock is held only
while checking the cache and registering the in-flight fetch, never while the
fetch itself runs, so keys that share a shard still never wait on each
other's I/O.
"""
import asyncio
import logging
import time
from datetime import date as date_type
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Union

from cachetools import TTLCache

from core.metrics import CACHE_FETCHES, CACHE_FETCH_LATENCY, CACHE_LOOKUPS

logger = logging.getLogger(__name__)

_MISSING = object()

# ----------------------------------------------------------------------
# Defaults (seconds / entries)
# ----------------------------------------------------------------------
SEARCH_TTL = 5 * 60
REFERENCE_TTL = 24 * 60 * 60
SEARCH_MAX_SIZE = 5000
DEFAULT_MAX_SIZE = 1000
DEFAULT_LOCK_SHARDS = 64


class ShardedLockTable:
    """Fixed pool of asyncio locks; a key always maps to the same shard."""

    def __init__(self, shards: int = DEFAULT_LOCK_SHARDS):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(shards)]

    def __len__(self) -> int:
        return len(self._locks)

    def shard_index(self, key: Hashable) -> int:
        return hash(key) % len(self._locks)

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        return self._locks[self.shard_index(key)]


class SingleFlightCache:
    """
    TTL cache (``cachetools.TTLCache``) whose misses are filled by an async
    fetcher at most once per miss episode. Failed fetches are not cached.
    """

    def __init__(
        self,
        name: str,
        ttl: float,
        maxsize: int = DEFAULT_MAX_SIZE,
        lock_shards: int = DEFAULT_LOCK_SHARDS,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl = ttl
        self.maxsize = maxsize
        self._store = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._locks = ShardedLockTable(lock_shards)
        self._inflight: Dict[Hashable, asyncio.Future] = {}

        self._hits = 0
        self._misses = 0
        self._joins = 0
        self._errors = 0

    # ----------------------------------------------------------------------
    # Plain access
    # ----------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._store

    def get(self, key: Hashable, default: Any = None) -> Any:
        return self._store.get(key, default)

    def put(self, key: Hashable, value: Any) -> None:
        self._store[key] = value

    def invalidate(self, key: Hashable) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        """Drop every stored entry. Fetches already in flight still complete and store."""
        self._store.clear()

    def inflight(self) -> int:
        return len(self._inflight)

    # ----------------------------------------------------------------------
    # Single-flight population
    # ----------------------------------------------------------------------

    async def get_or_fetch(
        self,
        key: Hashable,
        fetcher: Callable[[], Awaitable[Any]],
        on_store: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """
        Return the cached value for ``key`` or produce it with ``fetcher``.

        ``on_store`` runs once, right after a fetched value is stored.
        """
        # Fast path, no lock
        value = self._store.get(key, _MISSING)
        if value is not _MISSING:
            self._record_hit()
            return value

        async with self._locks.lock_for(key):
            # Another caller may have stored it while we waited for the shard
            value = self._store.get(key, _MISSING)
            if value is not _MISSING:
                self._record_hit()
                return value

            task = self._inflight.get(key)
            if task is None:
                self._misses += 1
                CACHE_LOOKUPS.labels(cache=self.name, result="miss").inc()
                task = asyncio.ensure_future(self._populate(key, fetcher, on_store))
                task.add_done_callback(_retrieve_exception)
                self._inflight[key] = task
            else:
                self._joins += 1
                CACHE_LOOKUPS.labels(cache=self.name, result="joined").inc()

        return await asyncio.shield(task)

    async def _populate(self, key, fetcher, on_store):
        start = time.monotonic()
        try:
            value = await fetcher()
            self._store[key] = value
            if on_store is not None:
                on_store(value)
        except Exception:
            self._errors += 1
            CACHE_FETCHES.labels(cache=self.name, status="error").inc()
            logger.warning(
                "Cache fetch failed",
                extra={"event": "cache_fetch_failed", "cache": self.name, "key": str(key)},
                exc_info=True,
            )
            raise
        else:
            CACHE_FETCHES.labels(cache=self.name, status="success").inc()
            logger.debug(
                "Cache populated",
                extra={"event": "cache_populated", "cache": self.name, "key": str(key)},
            )
            return value
        finally:
            CACHE_FETCH_LATENCY.labels(cache=self.name).observe(time.monotonic() - start)
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

    def _record_hit(self) -> None:
        self._hits += 1
        CACHE_LOOKUPS.labels(cache=self.name, result="hit").inc()

    def stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses + self._joins
        return {
            "name": self.name,
            "size": len(self._store),
            "max_size": self.maxsize,
            "ttl_seconds": self.ttl,
            "hits": self._hits,
            "misses": self._misses,
            "joined": self._joins,
            "fetch_errors": self._errors,
            "inflight": len(self._inflight),
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }


def _retrieve_exception(task: asyncio.Future) -> None:
    # Mark the exception as retrieved even when every waiter has gone away;
    # waiters still awaiting the task receive it as usual.
    if not task.cancelled():
        task.exception()


# ----------------------------------------------------------------------
# Route-search cache
# ----------------------------------------------------------------------

def route_search_key(
    origin: str,
    destination: str,
    date: Union[str, date_type],
    adults: int = 1,
    children: int = 0,
    infants: int = 0,
) -> str:
    """Composite key: ORIGIN-DESTINATION-DATE-ADULTS-CHILDREN-INFANTS."""
    if isinstance(date, date_type):
        date = date.isoformat()
    return f"{origin.strip().upper()}-{destination.strip().upper()}-{date}-{adults}-{children}-{infants}"


class RouteSearchCache:
    """
    Caches owned by the search path.

    - ``searches``: search results keyed by route+date+passengers, short TTL
    - ``search_results``: the same results keyed by their ``search_id``, so a
      booking step can check the exact search a flight came from
    - ``reference``: long-lived reference data (routes, stations)
    """

    def __init__(
        self,
        search_ttl: float = SEARCH_TTL,
        reference_ttl: float = REFERENCE_TTL,
        search_max_size: int = SEARCH_MAX_SIZE,
        reference_max_size: int = DEFAULT_MAX_SIZE,
        lock_shards: int = DEFAULT_LOCK_SHARDS,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.searches = SingleFlightCache("route_search", search_ttl, search_max_size, lock_shards, timer)
        self.search_results = SingleFlightCache("search_result", search_ttl, search_max_size, lock_shards, timer)
        self.reference = SingleFlightCache("reference", reference_ttl, reference_max_size, lock_shards, timer)

    @classmethod
    def from_settings(cls, settings) -> "RouteSearchCache":
        return cls(
            search_ttl=settings.search_cache_ttl,
            reference_ttl=settings.reference_cache_ttl,
            search_max_size=settings.search_cache_max_size,
            reference_max_size=settings.reference_cache_max_size,
            lock_shards=settings.cache_lock_shards,
        )

    async def get_or_fetch(self, key: Hashable, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        """Search-result lookup; values with a ``search_id`` are also stored under it."""
        return await self.searches.get_or_fetch(key, fetcher, on_store=self._store_secondary)

    def _store_secondary(self, value: Any) -> None:
        search_id = getattr(value, "search_id", None)
        if search_id:
            self.search_results.put(search_id, value)

    def get_search_result(self, search_id: Optional[str]) -> Any:
        if not search_id:
            return None
        return self.search_results.get(search_id)

    async def get_reference(self, key: Hashable, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        return await self.reference.get_or_fetch(key, fetcher)

    def invalidate_all(self) -> None:
        for cache in (self.searches, self.search_results, self.reference):
            cache.clear()
        logger.info("All caches invalidated", extra={"event": "cache_invalidate_all"})

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {cache.name: cache.stats() for cache in (self.searches, self.search_results, self.reference)}
