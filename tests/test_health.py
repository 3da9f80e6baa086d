"""
Operations endpoint tests: health, version, cache and telemetry views, and
the tariff-alert proxy.
"""
import httpx
from fastapi.testclient import TestClient

from finsight.api_client import FinSightApiClient
from finsight.main import app, get_client
from finsight.cache import TTLCache
from finsight.pipeline import RequestPipeline
from finsight.rate_limiter import TokenBucketLimiter
from finsight.retry import BackoffRetrier
from finsight.telemetry import TelemetryRecorder
from finsight.transforms import default_registry
from finsight.transport import HttpTransport

client = TestClient(app)


async def _no_sleep(seconds):
    return None


def _mock_api_client(handler) -> FinSightApiClient:
    transport = HttpTransport(
        "https://api.test/v1",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    pipeline = RequestPipeline(
        limiter=TokenBucketLimiter(max_tokens=10, interval=60.0),
        cache=TTLCache(),
        retrier=BackoffRetrier(sleep=_no_sleep),
        telemetry=TelemetryRecorder(),
        transforms=default_registry(),
    )
    return FinSightApiClient(transport, pipeline)


def test_health_endpoint_returns_200():
    """Test that /health returns HTTP 200"""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status():
    """Test that /health returns status: ok"""
    response = client.get("/health")
    data = response.json()
    assert data["status"] == "ok"


def test_version_endpoint():
    data = client.get("/version").json()
    assert data["name"] == "FinSight API Client"
    assert data["version"]


def test_cache_stats_and_clear():
    stats = client.get("/cache/stats").json()
    assert "cache" in stats
    assert stats["rate_limiter"]["max_tokens"] >= 1

    response = client.delete("/cache")
    assert response.status_code == 200
    assert response.json()["key"] is None


def test_telemetry_summary_when_empty():
    data = client.get("/api/telemetry", params={"operation": "nothing_yet"}).json()
    assert data["total"] == 0
    assert data["error_rate"] == 0.0


def test_tariff_alert_proxy_and_telemetry_views():
    payload = {"alerts": [{"title": "Rice export quota", "country": "Vietnam"}]}
    api_client = _mock_api_client(lambda request: httpx.Response(200, json=payload))
    app.dependency_overrides[get_client] = lambda: api_client
    try:
        first = client.get("/api/tariff-alerts", params={"countries": "Vietnam"})
        second = client.get("/api/tariff-alerts", params={"countries": "Vietnam"})
        assert first.status_code == 200
        assert first.json()["count"] == 1
        assert second.json() == first.json()

        summary = client.get("/api/telemetry").json()
        assert summary["total"] == 1
        assert summary["top_operations"] == [{"operation": "tariff_alerts", "count": 1}]

        events = client.get("/api/telemetry/events", params={"success": True}).json()["events"]
        assert len(events) == 1
        assert events[0]["operation"] == "tariff_alerts"
    finally:
        app.dependency_overrides.clear()


def test_tariff_alert_proxy_maps_upstream_failures():
    api_client = _mock_api_client(lambda request: httpx.Response(503, text="down"))
    app.dependency_overrides[get_client] = lambda: api_client
    try:
        response = client.get("/api/tariff-alerts")
        assert response.status_code == 502
    finally:
        app.dependency_overrides.clear()

    api_client = _mock_api_client(lambda request: httpx.Response(401, text="bad key"))
    app.dependency_overrides[get_client] = lambda: api_client
    try:
        response = client.get("/api/tariff-alerts")
        assert response.status_code == 400
    finally:
        app.dependency_overrides.clear()
