"""
Response caching with per-category TTL, request coalescing and an optional durable store.
"""
from .core import CacheCategory, CacheEntry
from .ttl_policies import TTL_CONFIG, get_ttl_for_category
from .coalescer import RequestCoalescer
from .storage import (
    KeyValueStorage,
    MemoryStorage,
    PersistentCache,
    QuotaExceededError,
    SqliteStorage,
)
from .manager import TTLCache, build_cache_from_settings, get_cache_manager

__all__ = [
    # Core types
    "CacheCategory",
    "CacheEntry",
    # TTL policies
    "TTL_CONFIG",
    "get_ttl_for_category",
    # Coalescing
    "RequestCoalescer",
    # Durable storage
    "KeyValueStorage",
    "MemoryStorage",
    "PersistentCache",
    "QuotaExceededError",
    "SqliteStorage",
    # Manager
    "TTLCache",
    "build_cache_from_settings",
    "get_cache_manager",
]
