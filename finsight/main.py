"""
FinSight API Client - operations endpoints.

Exposes health, cache and telemetry state of the process-wide client, plus
a tariff-alert proxy that goes through the full request pipeline.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query

from finsight import __version__
from finsight.api_client import FinSightApiClient, close_api_client, get_api_client
from finsight.errors import ClientError, RequestFailedError
from finsight.telemetry.models import TelemetryFilter
from config.settings import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = __version__
APP_NAME = "FinSight API Client"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_api_client()


app = FastAPI(
    title=APP_NAME,
    description="Rate-limited, cached access to the FinSight upstream APIs",
    version=APP_VERSION,
    lifespan=lifespan,
)


def get_client() -> FinSightApiClient:
    """Dependency returning the process-wide client."""
    return get_api_client()


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "environment": settings.api_environment}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
    }


# ===== CACHE =====

@app.get("/cache/stats")
def cache_stats(client: FinSightApiClient = Depends(get_client)):
    """Get cache and rate limiter statistics."""
    stats = client.get_stats()
    return {
        "cache": stats["cache"],
        "rate_limiter": stats["rate_limiter"],
    }


@app.delete("/cache")
def clear_cache(
    key: Optional[str] = Query(None, description="Cache key to clear (all when omitted)"),
    client: FinSightApiClient = Depends(get_client),
):
    """Clear one cache entry or the whole cache."""
    cleared = client.clear_cache(key)
    logger.info(f"Cache clear requested (key={key}), {cleared} entries removed")
    return {"cleared": cleared, "key": key}


# ===== TELEMETRY =====

@app.get("/api/telemetry")
def telemetry_summary(
    operation: Optional[str] = Query(None, description="Only this operation"),
    client: FinSightApiClient = Depends(get_client),
):
    """Error rate, latency and top operations over recorded calls."""
    event_filter = TelemetryFilter(operations=[operation]) if operation else None
    return client.telemetry_summary(event_filter).to_dict()


@app.get("/api/telemetry/events")
def telemetry_events(
    operation: Optional[str] = Query(None, description="Only this operation"),
    success: Optional[bool] = Query(None, description="Only successes or failures"),
    limit: int = Query(50, ge=1, le=1000, description="Newest N events"),
    client: FinSightApiClient = Depends(get_client),
):
    """Recent telemetry events. Parameters are already redacted."""
    event_filter = TelemetryFilter(
        operations=[operation] if operation else None,
        success=success,
    )
    return {"events": [e.to_dict() for e in client.telemetry_events(event_filter, limit=limit)]}


# ===== PROXY =====

@app.get("/api/tariff-alerts")
async def tariff_alerts(
    countries: Optional[str] = Query(None, description="Comma-separated countries"),
    priority_level: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    client: FinSightApiClient = Depends(get_client),
):
    """Tariff alerts through the cached, rate-limited pipeline."""
    country_list = [c.strip() for c in countries.split(",") if c.strip()] if countries else None
    try:
        alerts = await client.get_tariff_alerts(
            countries=country_list,
            priority_level=priority_level,
            limit=limit,
        )
    except RequestFailedError as e:
        status = 400 if isinstance(e.cause, ClientError) else 502
        raise HTTPException(status_code=status, detail=str(e))
    return {"alerts": alerts, "count": len(alerts)}
