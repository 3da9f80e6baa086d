"""
Bounded, redacted history of API call outcomes.

Parameters are redacted when the event is recorded, so nothing sensitive is
ever held in the buffer or written to disk. The buffer keeps the most recent
`capacity` events; the optional on-disk store has its own age-based expiry.
"""
import logging
import math
import time
import uuid
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional

from .models import TelemetryEvent, TelemetryFilter, TelemetrySummary
from .persistence import TelemetryStore
from .redaction import DEFAULT_SENSITIVE_KEYS, DEFAULT_SENSITIVE_PATTERNS, redact_params

logger = logging.getLogger("telemetry")

DEFAULT_CAPACITY = 100
DEFAULT_MAX_AGE_SECONDS = 30 * 24 * 60 * 60  # 30 days
TOP_OPERATIONS_LIMIT = 5


class TelemetryRecorder:
    """
    Records request outcomes in a ring buffer.

    Usage:
        telemetry = TelemetryRecorder(capacity=100)
        telemetry.record(
            operation="tariff_alerts",
            params={"countries": ["Vietnam"]},
            started_at=t0, ended_at=t1, success=True,
        )
        telemetry.summarize()
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        redact_patterns: Iterable[str] = DEFAULT_SENSITIVE_PATTERNS,
        redact_keys: Iterable[str] = DEFAULT_SENSITIVE_KEYS,
        redaction_enabled: bool = True,
        store: Optional[TelemetryStore] = None,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.redact_patterns = tuple(redact_patterns)
        self.redact_keys = tuple(redact_keys)
        self.redaction_enabled = redaction_enabled
        self.enabled = enabled
        self._store = store
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        self._events: Deque[TelemetryEvent] = deque(maxlen=capacity)

        if self._store is not None:
            self._load_persisted()

    def _load_persisted(self) -> None:
        try:
            events = self._store.load(self._clock(), self._max_age_seconds)
        except OSError as e:
            logger.warning(f"Could not load persisted telemetry: {e}")
            return
        self._events.extend(events)
        logger.info(f"Loaded {len(self._events)} persisted telemetry events")

    def record(
        self,
        operation: str,
        started_at: float,
        ended_at: float,
        success: bool,
        params: Optional[Mapping[str, Any]] = None,
        error_code: Optional[str] = None,
        correlation_id: Optional[str] = None,
        attempts: int = 1,
    ) -> TelemetryEvent:
        """
        Record one call outcome.

        Failures are always logged, even when telemetry storage is disabled.

        Returns:
            The stored (redacted) event
        """
        event = TelemetryEvent(
            id=uuid.uuid4().hex,
            operation=operation,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=round(max(0.0, ended_at - started_at) * 1000, 3),
            success=success,
            error_code=error_code,
            redacted_params=redact_params(
                params, self.redact_patterns, self.redaction_enabled,
                self.redact_keys,
            ),
            correlation_id=correlation_id,
            attempts=attempts,
        )

        if not success:
            logger.warning(
                f"{operation} failed [{error_code}] after {attempts} attempt(s) "
                f"in {event.duration_ms:.0f}ms (request {correlation_id})"
            )

        if not self.enabled:
            return event

        self._events.append(event)
        if self._store is not None:
            # Persistence is best-effort
            try:
                self._store.append(event)
            except OSError as e:
                logger.warning(f"Could not persist telemetry event: {e}")
        return event

    def events(
        self,
        filter: Optional[TelemetryFilter] = None,
        limit: Optional[int] = None,
    ) -> List[TelemetryEvent]:
        """Events matching `filter`, oldest first. `limit` keeps the newest N."""
        matched = [e for e in self._events if filter is None or filter.matches(e)]
        if limit is not None:
            matched = matched[-limit:] if limit > 0 else []
        return matched

    def summarize(self, filter: Optional[TelemetryFilter] = None) -> TelemetrySummary:
        """Aggregate metrics over the events matching `filter`."""
        events = self.events(filter)
        if not events:
            return TelemetrySummary()

        failures = [e for e in events if not e.success]
        durations = sorted(e.duration_ms for e in events)
        p95_index = max(0, math.ceil(0.95 * len(durations)) - 1)
        operation_counts = Counter(e.operation for e in events)
        top = sorted(operation_counts.items(), key=lambda kv: (-kv[1], kv[0]))

        return TelemetrySummary(
            total=len(events),
            failures=len(failures),
            error_rate=round(len(failures) / len(events), 4),
            average_duration_ms=round(sum(durations) / len(durations), 3),
            p95_duration_ms=durations[p95_index],
            top_operations=[
                {"operation": op, "count": count}
                for op, count in top[:TOP_OPERATIONS_LIMIT]
            ],
            error_codes=dict(Counter(e.error_code or "unknown" for e in failures)),
        )

    def clear(self) -> None:
        """Drop all events, in memory and on disk."""
        self._events.clear()
        if self._store is not None:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._events)


def build_telemetry_from_settings(settings) -> TelemetryRecorder:
    """Create a TelemetryRecorder configured from a Settings instance."""
    store = None
    if settings.telemetry_log_path is not None:
        store = TelemetryStore(settings.telemetry_log_path)
    return TelemetryRecorder(
        capacity=settings.telemetry_capacity,
        redact_patterns=settings.telemetry_redact_patterns,
        redact_keys=settings.telemetry_redact_keys,
        redaction_enabled=settings.telemetry_redaction,
        store=store,
        max_age_seconds=settings.telemetry_max_age_days * 24 * 60 * 60,
        enabled=settings.telemetry_enabled,
    )
