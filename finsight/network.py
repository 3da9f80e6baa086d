"""
Connection-quality signal consumed by the client.

Whatever detects the network (browser API, device check, a header set by an
edge proxy) hands us a ConnectionQuality. It only ever makes requests more
conservative: smaller pages and longer-lived cache entries. It never changes
rate limiting or retry behaviour.
"""
from dataclasses import dataclass
from typing import Optional

CONSTRAINED_TYPES = ("slow-2g", "2g")
SLOW_TYPES = ("3g",)

# Page size ceilings by connection class
PAGE_SIZE_SAVE_DATA = 5
PAGE_SIZE_2G = 10
PAGE_SIZE_3G = 20

# Below this a nominal 4g link is treated as slow
SLOW_DOWNLINK_MBPS = 2.0


@dataclass(frozen=True)
class ConnectionQuality:
    """Current connection class, data-saver flag and downlink estimate."""
    connection_type: str = "unknown"  # slow-2g, 2g, 3g, 4g, wifi, unknown
    save_data: bool = False
    downlink_mbps: Optional[float] = None

    @property
    def is_constrained(self) -> bool:
        return self.save_data or self.connection_type in CONSTRAINED_TYPES

    @property
    def is_slow(self) -> bool:
        if self.connection_type in SLOW_TYPES:
            return True
        return (
            self.connection_type == "4g"
            and self.downlink_mbps is not None
            and self.downlink_mbps < SLOW_DOWNLINK_MBPS
        )


def page_size_for(default: int, quality: Optional[ConnectionQuality]) -> int:
    """Pick a page size no larger than `default` for the given connection."""
    if quality is None:
        return default
    if quality.save_data or quality.connection_type == "slow-2g":
        return max(1, min(default, PAGE_SIZE_SAVE_DATA))
    if quality.connection_type == "2g":
        return max(1, min(default, PAGE_SIZE_2G))
    if quality.is_slow:
        return max(1, min(default, PAGE_SIZE_3G))
    return default


def ttl_multiplier(quality: Optional[ConnectionQuality]) -> float:
    """Factor applied to cache TTLs; always >= 1."""
    if quality is None:
        return 1.0
    if quality.is_constrained:
        return 2.0
    if quality.is_slow:
        return 1.5
    return 1.0
