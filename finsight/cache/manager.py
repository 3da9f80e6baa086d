"""
Main cache orchestration with per-category TTL and request coalescing.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .core import CacheEntry
from .coalescer import RequestCoalescer
from .storage import PersistentCache, SqliteStorage
from .ttl_policies import get_ttl_for_category
from ..network import ConnectionQuality

logger = logging.getLogger("cache.manager")


class TTLCache:
    """
    Response cache with:
    - Per-category TTL (see ttl_policies)
    - Request coalescing so concurrent misses share one fetch
    - Optional write-through to a durable PersistentCache

    Only successful fetches are stored. A failed refresh propagates the
    error and leaves whatever entry was already there.
    """

    def __init__(
        self,
        ttl_overrides: Optional[Mapping[str, float]] = None,
        storage: Optional[PersistentCache] = None,
        connection: Optional[ConnectionQuality] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Args:
            ttl_overrides: Per-category TTLs (seconds) replacing the defaults
            storage: Durable backing store; consulted on in-memory misses
            connection: Connection quality used to stretch TTLs
            enabled: When False every call goes upstream (still coalesced)
            clock: Wall-clock time source in seconds
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._coalescer = RequestCoalescer()
        self._ttl_overrides = dict(ttl_overrides or {})
        self._storage = storage
        self.connection = connection
        self.enabled = enabled
        self._clock = clock
        self._disposed = False

        # Stats tracking
        self._stats = {
            "hits": 0,
            "durable_hits": 0,
            "misses": 0,
            "refreshes": 0,
            "fetch_errors": 0,
        }

    async def get_or_fetch(
        self,
        cache_key: str,
        category: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        force_fresh: bool = False,
    ) -> Any:
        """
        Return cached data for `cache_key`, fetching it when needed.

        Args:
            cache_key: Unique cache key
            category: Cache category (selects the TTL)
            fetch_fn: Coroutine function producing fresh data
            force_fresh: Skip the lookup and always fetch

        Returns:
            Cached or freshly fetched data

        Raises:
            RuntimeError: If the cache has been disposed
            Exception: Any error from fetch_fn
        """
        if self._disposed:
            raise RuntimeError("Cache has been disposed")

        if not self.enabled:
            return await self._coalescer.get_or_fetch(cache_key, fetch_fn)

        if force_fresh:
            logger.info(f"FORCE REFRESH: {cache_key}")
            self._stats["refreshes"] += 1
        else:
            entry = self._lookup(cache_key)
            if entry is not None:
                self._stats["hits"] += 1
                logger.debug(
                    f"CACHE HIT: {cache_key} "
                    f"[age={entry.age_seconds(self._clock()):.1f}s]"
                )
                return entry.data
            logger.info(f"CACHE MISS: {cache_key}")
            self._stats["misses"] += 1

        return await self._coalescer.get_or_fetch(
            cache_key,
            lambda: self._load_or_fetch(cache_key, category, fetch_fn, force_fresh),
        )

    async def _load_or_fetch(
        self,
        cache_key: str,
        category: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        force_fresh: bool,
    ) -> Any:
        # Durable I/O runs in a worker thread and is coalesced with the fetch
        if self._storage is not None and not force_fresh:
            entry = await asyncio.to_thread(self._storage.get, cache_key, self._clock())
            if entry is not None and not self._disposed:
                self._entries[cache_key] = entry
                self._stats["durable_hits"] += 1
                return entry.data

        try:
            data = await fetch_fn()
        except Exception:
            self._stats["fetch_errors"] += 1
            raise
        if not self._disposed:
            entry = self._store(cache_key, data, category)
            if self._storage is not None:
                await self._write_durable(cache_key, entry)
        return data

    def _lookup(self, cache_key: str) -> Optional[CacheEntry]:
        """Find a live in-memory entry, dropping an expired one on the way."""
        now = self._clock()
        entry = self._entries.get(cache_key)
        if entry is not None:
            if entry.is_valid(now):
                return entry
            logger.info(f"CACHE EXPIRED: {cache_key} [age={entry.age_seconds(now):.1f}s]")
            del self._entries[cache_key]
        return None

    def _store(self, cache_key: str, data: Any, category: str) -> CacheEntry:
        """Store data in memory."""
        now = self._clock()
        ttl = get_ttl_for_category(category, self._ttl_overrides, self.connection)
        entry = CacheEntry(data=data, stored_at=now, expires_at=now + ttl)
        self._entries[cache_key] = entry
        return entry

    async def _write_durable(self, cache_key: str, entry: CacheEntry) -> None:
        # Durable caching is best-effort
        try:
            await asyncio.to_thread(self._storage.set, cache_key, entry)
        except Exception as e:
            logger.warning(f"Durable cache write failed for {cache_key}: {e}")

    def peek(self, cache_key: str) -> Optional[Any]:
        """Return live cached data without fetching or touching stats."""
        entry = self._entries.get(cache_key)
        if entry is not None and entry.is_valid(self._clock()):
            return entry.data
        return None

    def invalidate(self, cache_key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        found = self._entries.pop(cache_key, None) is not None
        if self._storage is not None:
            self._storage.remove(cache_key)
        if found:
            logger.info(f"Invalidated cache: {cache_key}")
        return found

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all in-memory entries whose key contains `pattern`.

        Returns:
            Number of entries invalidated
        """
        to_delete = [k for k in self._entries if pattern in k]
        for key in to_delete:
            self.invalidate(key)
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        return len(to_delete)

    def clear(self, cache_key: Optional[str] = None) -> int:
        """
        Remove one entry, or all entries when no key is given.

        Returns:
            Number of entries cleared
        """
        if cache_key is not None:
            return 1 if self.invalidate(cache_key) else 0

        count = len(self._entries)
        self._entries.clear()
        if self._storage is not None:
            count = max(count, self._storage.clear())
        logger.info(f"Cleared {count} cache entries")
        return count

    def purge_expired(self) -> int:
        """Drop expired in-memory entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not e.is_valid(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def dispose(self) -> None:
        """Cancel in-flight fetches and drop in-memory entries."""
        if self._disposed:
            return
        self._disposed = True
        await self._coalescer.cancel_all()
        self._entries.clear()
        logger.info("Cache disposed")

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        lookups = self._stats["hits"] + self._stats["misses"]
        hit_rate = (self._stats["hits"] / lookups * 100) if lookups > 0 else 0

        stats = {
            "enabled": self.enabled,
            "entries": len(self._entries),
            "hits": self._stats["hits"],
            "durable_hits": self._stats["durable_hits"],
            "misses": self._stats["misses"],
            "refreshes": self._stats["refreshes"],
            "fetch_errors": self._stats["fetch_errors"],
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self._coalescer.get_stats(),
        }
        if self._storage is not None:
            stats["durable"] = self._storage.get_stats()
        return stats


def build_cache_from_settings(settings) -> TTLCache:
    """Create a TTLCache configured from a Settings instance."""
    storage = None
    if settings.cache_db_path is not None:
        storage = PersistentCache(
            SqliteStorage(settings.cache_db_path, max_bytes=settings.cache_max_bytes),
            namespace=settings.cache_namespace,
        )
    return TTLCache(
        ttl_overrides=settings.cache_ttl_overrides,
        storage=storage,
        enabled=settings.cache_enabled,
    )


# Global cache manager instance
_cache_manager: Optional[TTLCache] = None


def get_cache_manager() -> TTLCache:
    """Get or create the global cache."""
    global _cache_manager
    if _cache_manager is None or _cache_manager.disposed:
        from config.settings import settings
        _cache_manager = build_cache_from_settings(settings)
    return _cache_manager
