"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Perplexity API configuration
    perplexity_api_key: Optional[str] = None
    # development / staging / production
    api_environment: str = "development"
    # Overrides the environment's base URL when set
    api_base_url: Optional[str] = None
    request_timeout_seconds: float = 30.0

    # Rate limiting (token bucket)
    rate_limit_requests_per_minute: int = 60
    rate_limit_interval_seconds: float = 60.0

    # Retry / backoff
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0

    # Cache settings
    cache_enabled: bool = True
    cache_namespace: str = "perplexity_cache"
    # Per-category TTL overrides in seconds, e.g. {"marketNews": 60}
    cache_ttl_overrides: Dict[str, int] = {}
    # Enables the durable cache variant when set
    cache_db_path: Optional[Path] = None
    cache_max_bytes: Optional[int] = 5 * 1024 * 1024

    # Telemetry
    telemetry_enabled: bool = True
    telemetry_capacity: int = 100
    telemetry_redaction: bool = True
    # Exact key names (credentials, chat messages)
    telemetry_redact_keys: List[str] = [
        "apikey", "key", "accesstoken", "token", "password", "secret",
        "authorization", "ip", "messages", "prompt",
    ]
    # Matched anywhere in the key (personal data)
    telemetry_redact_patterns: List[str] = [
        "email", "query", "user", "name", "location", "password", "secret",
    ]
    # JSON-lines file; persistence is off when unset
    telemetry_log_path: Optional[Path] = None
    telemetry_max_age_days: int = 30

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
