"""
Request telemetry: redacted ring buffer, summaries and optional persistence.
"""
from .models import TelemetryEvent, TelemetryFilter, TelemetrySummary
from .redaction import (
    DEFAULT_SENSITIVE_KEYS,
    DEFAULT_SENSITIVE_PATTERNS,
    mask_value,
    redact_params,
)
from .persistence import TelemetryStore
from .recorder import TelemetryRecorder, build_telemetry_from_settings

__all__ = [
    # Models
    "TelemetryEvent",
    "TelemetryFilter",
    "TelemetrySummary",
    # Redaction
    "DEFAULT_SENSITIVE_KEYS",
    "DEFAULT_SENSITIVE_PATTERNS",
    "mask_value",
    "redact_params",
    # Recording
    "TelemetryStore",
    "TelemetryRecorder",
    "build_telemetry_from_settings",
]
