"""
TTL configuration by cache category.
"""
import logging
from typing import Dict, Mapping, Optional

from .core import CacheCategory
from ..network import ConnectionQuality, ttl_multiplier

logger = logging.getLogger("cache.ttl")


# TTL Configuration by category (in seconds)
TTL_CONFIG: Dict[str, int] = {
    CacheCategory.DEFAULT: 300,                 # 5 minutes
    CacheCategory.SIMULATION_INPUTS: 900,       # 15 minutes
    CacheCategory.SIMULATION_OUTPUTS: 600,      # 10 minutes
    CacheCategory.SIMULATION_COMPARISONS: 900,  # 15 minutes
    CacheCategory.TARIFF_ALERTS: 180,           # 3 minutes
    CacheCategory.MARKET_NEWS: 120,             # 2 minutes
    CacheCategory.FINANCIAL_DATA: 60,           # 1 minute
    CacheCategory.SANKEY_DATA: 300,             # 5 minutes
    CacheCategory.AI_INSIGHTS: 600,             # 10 minutes
    CacheCategory.PARAMETER_HISTORY: 900,       # 15 minutes
    CacheCategory.ECONOMIC_SIMULATION: 600,     # 10 minutes
}


def get_ttl_for_category(
    category: str,
    overrides: Optional[Mapping[str, float]] = None,
    connection: Optional[ConnectionQuality] = None,
) -> float:
    """
    Get the TTL for a cache category.

    Args:
        category: Category label (unknown labels use the default TTL)
        overrides: Per-category TTLs that replace the built-in ones
        connection: Current connection quality; constrained links keep
            entries longer, never shorter

    Returns:
        TTL in seconds
    """
    overrides = overrides or {}
    if category in overrides:
        ttl = float(overrides[category])
    elif category in TTL_CONFIG:
        ttl = float(TTL_CONFIG[category])
    else:
        logger.debug(f"No TTL configured for '{category}', using default")
        ttl = float(overrides.get(CacheCategory.DEFAULT, TTL_CONFIG[CacheCategory.DEFAULT]))

    if ttl <= 0:
        raise ValueError(f"TTL for '{category}' must be positive, got {ttl}")

    if connection is not None:
        ttl *= ttl_multiplier(connection)
    return ttl
