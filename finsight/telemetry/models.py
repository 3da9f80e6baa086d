"""
Telemetry data models.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class TelemetryEvent:
    """
    Outcome of one logical API call.

    `started_at` / `ended_at` are Unix timestamps in seconds.
    `redacted_params` never holds raw sensitive values.
    """
    id: str
    operation: str
    started_at: float
    ended_at: float
    duration_ms: float
    success: bool
    error_code: Optional[str] = None
    redacted_params: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TelemetryEvent":
        return cls(
            id=data["id"],
            operation=data["operation"],
            started_at=float(data["started_at"]),
            ended_at=float(data["ended_at"]),
            duration_ms=float(data["duration_ms"]),
            success=bool(data["success"]),
            error_code=data.get("error_code"),
            redacted_params=data.get("redacted_params") or {},
            correlation_id=data.get("correlation_id"),
            attempts=int(data.get("attempts", 1)),
        )


@dataclass
class TelemetryFilter:
    """Selects events by time window, operation and outcome. Unset fields match all."""
    since: Optional[float] = None
    until: Optional[float] = None
    operations: Optional[Sequence[str]] = None
    success: Optional[bool] = None

    def matches(self, event: TelemetryEvent) -> bool:
        if self.since is not None and event.started_at < self.since:
            return False
        if self.until is not None and event.started_at > self.until:
            return False
        if self.operations is not None and event.operation not in self.operations:
            return False
        if self.success is not None and event.success != self.success:
            return False
        return True


@dataclass
class TelemetrySummary:
    """Aggregate metrics over a filtered set of events."""
    total: int = 0
    failures: int = 0
    error_rate: float = 0.0
    average_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    top_operations: List[Dict[str, Any]] = field(default_factory=list)
    error_codes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
