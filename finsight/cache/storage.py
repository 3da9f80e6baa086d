"""
Durable key/value storage for the cache.

PersistentCache writes entries as JSON `{"data", "timestamp", "expiry"}`
under `"<namespace>:<key>"` in any KeyValueStorage. Writes are best-effort:
when the store reports it is full, the oldest 20% of the namespace is evicted
and the write is retried once, then dropped.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .core import CacheEntry

logger = logging.getLogger("cache.storage")

# Fraction of a namespace removed when the store is full
EVICTION_FRACTION = 0.2


class QuotaExceededError(Exception):
    """The store refused a write because it is full."""
    pass


class KeyValueStorage(Protocol):
    """
    Minimal string key/value store.

    Implementations raise QuotaExceededError from set_item when full.
    """

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class MemoryStorage:
    """
    In-process store with optional entry and byte quotas.

    Useful for tests and for running without a database.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        max_bytes: Optional[int] = None,
    ):
        self._items: Dict[str, str] = {}
        self.max_entries = max_entries
        self.max_bytes = max_bytes

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        replacing = key in self._items
        if self.max_entries is not None and not replacing:
            if len(self._items) + 1 > self.max_entries:
                raise QuotaExceededError(
                    f"Storage full ({len(self._items)}/{self.max_entries} entries)"
                )
        if self.max_bytes is not None:
            current = self.used_bytes() - (
                len(self._items[key].encode("utf-8")) if replacing else 0
            )
            if current + len(value.encode("utf-8")) > self.max_bytes:
                raise QuotaExceededError(
                    f"Storage full ({current}/{self.max_bytes} bytes)"
                )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._items.keys())

    def used_bytes(self) -> int:
        return sum(len(v.encode("utf-8")) for v in self._items.values())

    def __len__(self) -> int:
        return len(self._items)


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_items (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SqliteStorage:
    """
    SQLite-backed store. Survives process restarts.

    `max_bytes` caps the total size of stored values. Every call blocks on
    the database; TTLCache runs reads and writes through `asyncio.to_thread`.
    """

    def __init__(self, db_path: Path, max_bytes: Optional[int] = None):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM cache_items WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            if self.max_bytes is not None:
                row = conn.execute(
                    "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) "
                    "FROM cache_items WHERE key != ?",
                    (key,),
                ).fetchone()
                needed = row[0] + len(value.encode("utf-8"))
                if needed > self.max_bytes:
                    raise QuotaExceededError(
                        f"Storage full ({needed}/{self.max_bytes} bytes)"
                    )
            conn.execute(
                "INSERT OR REPLACE INTO cache_items (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM cache_items WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM cache_items").fetchall()
        return [row[0] for row in rows]


class PersistentCache:
    """
    Namespaced cache entries in a KeyValueStorage.

    Usage:
        durable = PersistentCache(SqliteStorage(Path("data/cache.db")))
        durable.set("tariff_alerts:{}", entry)
        entry = durable.get("tariff_alerts:{}", now=time.time())
    """

    def __init__(self, storage: KeyValueStorage, namespace: str = "perplexity_cache"):
        self.storage = storage
        self.namespace = namespace
        self._stats = {
            "writes": 0,
            "dropped_writes": 0,
            "evictions": 0,
        }

    def _storage_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _namespace_keys(self) -> List[str]:
        prefix = f"{self.namespace}:"
        return [k for k in self.storage.keys() if k.startswith(prefix)]

    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        """
        Read a live entry. Expired or unreadable entries are removed.
        """
        storage_key = self._storage_key(key)
        raw = self.storage.get_item(storage_key)
        if raw is None:
            return None

        try:
            parsed = json.loads(raw)
            entry = CacheEntry(
                data=parsed["data"],
                stored_at=float(parsed["timestamp"]),
                expires_at=float(parsed["expiry"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {storage_key}: {e}")
            self.storage.remove_item(storage_key)
            return None

        if not entry.is_valid(now):
            self.storage.remove_item(storage_key)
            return None
        return entry

    def set(self, key: str, entry: CacheEntry) -> bool:
        """
        Write an entry, evicting the oldest 20% of the namespace once if full.

        Returns:
            True if the entry was written, False if it was dropped
        """
        storage_key = self._storage_key(key)
        try:
            value = json.dumps({
                "data": entry.data,
                "timestamp": entry.stored_at,
                "expiry": entry.expires_at,
            })
        except (TypeError, ValueError) as e:
            logger.warning(f"Not persisting {storage_key}, data is not JSON serializable: {e}")
            self._stats["dropped_writes"] += 1
            return False

        try:
            self.storage.set_item(storage_key, value)
        except QuotaExceededError:
            removed = self.evict_oldest()
            logger.info(f"Storage quota exceeded, evicted {removed} oldest entries")
            try:
                self.storage.set_item(storage_key, value)
            except QuotaExceededError as e:
                logger.warning(f"Dropping cache write for {storage_key}: {e}")
                self._stats["dropped_writes"] += 1
                return False

        self._stats["writes"] += 1
        return True

    def evict_oldest(self, fraction: float = EVICTION_FRACTION) -> int:
        """
        Remove the oldest `fraction` of this namespace's entries (at least one).

        Unreadable entries count as oldest.

        Returns:
            Number of entries removed
        """
        entries = []
        for storage_key in self._namespace_keys():
            raw = self.storage.get_item(storage_key)
            try:
                timestamp = float(json.loads(raw).get("timestamp", 0)) if raw else 0.0
            except (ValueError, TypeError, AttributeError):
                timestamp = 0.0
            entries.append((timestamp, storage_key))

        if not entries:
            return 0

        entries.sort()
        to_remove = max(1, int(len(entries) * fraction))
        for _, storage_key in entries[:to_remove]:
            self.storage.remove_item(storage_key)
        self._stats["evictions"] += to_remove
        return to_remove

    def remove(self, key: str) -> None:
        self.storage.remove_item(self._storage_key(key))

    def clear(self) -> int:
        """Remove every entry in this namespace. Returns the count removed."""
        keys = self._namespace_keys()
        for storage_key in keys:
            self.storage.remove_item(storage_key)
        return len(keys)

    def __len__(self) -> int:
        return len(self._namespace_keys())

    def get_stats(self) -> Dict[str, int]:
        return {"entries": len(self), **self._stats}
