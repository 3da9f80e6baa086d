"""
FinSight API client layer.

Rate limiting, caching, retry with backoff and telemetry around the
dashboard's outbound API calls.
"""
__version__ = "0.3.0"
