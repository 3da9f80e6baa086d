"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any


class CacheCategory:
    """
    Labels mapping a response family to its configured TTL.

    Values match the keys used in TTL_CONFIG and in settings overrides.
    """
    DEFAULT = "default"
    SIMULATION_INPUTS = "simulationInputs"        # 15 minutes
    SIMULATION_OUTPUTS = "simulationOutputs"      # 10 minutes
    SIMULATION_COMPARISONS = "simulationComparisons"  # 15 minutes
    TARIFF_ALERTS = "tariffAlerts"                # 3 minutes
    MARKET_NEWS = "marketNews"                    # 2 minutes
    FINANCIAL_DATA = "financialData"              # 1 minute
    SANKEY_DATA = "sankeyData"
    AI_INSIGHTS = "aiInsights"
    PARAMETER_HISTORY = "parameterHistory"
    ECONOMIC_SIMULATION = "economicSimulation"


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached response. Replaced on refresh, never mutated in place.

    Times are seconds from the owning cache's clock.
    """
    data: Any
    stored_at: float
    expires_at: float

    def __post_init__(self):
        if self.expires_at <= self.stored_at:
            raise ValueError("expires_at must be after stored_at")

    @property
    def ttl_seconds(self) -> float:
        return self.expires_at - self.stored_at

    def age_seconds(self, now: float) -> float:
        """Seconds since the entry was stored."""
        return now - self.stored_at

    def is_valid(self, now: float) -> bool:
        """Live iff now < expires_at."""
        return now < self.expires_at
