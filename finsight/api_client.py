"""
FinSight API client.

Every operation goes through the RequestPipeline: cache, token bucket,
retry with backoff, telemetry and payload transforms. Build one with
`FinSightApiClient.from_settings()` or inject your own components; a
process-wide default is available from `get_api_client()`.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from .cache.core import CacheCategory
from .cache.manager import TTLCache, build_cache_from_settings, get_cache_manager
from .network import ConnectionQuality, page_size_for
from .pipeline import Fetcher, RequestPipeline
from .rate_limiter import TokenBucketLimiter, get_rate_limiter
from .retry import BackoffRetrier, RetryPolicy, model_ladder
from .scheduling import PollerRegistry
from .telemetry.models import TelemetryEvent, TelemetryFilter, TelemetrySummary
from .telemetry.recorder import TelemetryRecorder, build_telemetry_from_settings
from .transforms import default_registry
from .transport import HttpTransport, resolve_base_url

logger = logging.getLogger("api_client")

# Per-operation timeouts (seconds)
AI_INSIGHTS_TIMEOUT = 45.0
SIMULATION_OUTPUTS_TIMEOUT = 60.0
ECONOMIC_SIMULATION_TIMEOUT = 120.0

# Cheapest last; each retry steps one rung down
DEFAULT_MODEL_LADDER = (
    "sonar-small-chat",
    "mixtral-8x7b-instruct",
    "mistral-7b-instruct",
)


@dataclass(frozen=True)
class RequestOptions:
    """Per-call knobs shared by every operation."""
    use_cache: bool = True
    force_fresh: bool = False
    timeout: Optional[float] = None


DEFAULT_OPTIONS = RequestOptions()


def _join(values: Optional[Sequence[str]]) -> Optional[str]:
    return ",".join(values) if values else None


def _flag(value: bool) -> str:
    return "true" if value else "false"


class FinSightApiClient:
    """
    Typed operations over the upstream API.

    Usage:
        async with FinSightApiClient.from_settings() as client:
            alerts = await client.get_tariff_alerts(countries=["Vietnam"])
    """

    def __init__(
        self,
        transport: HttpTransport,
        pipeline: RequestPipeline,
        pollers: Optional[PollerRegistry] = None,
        connection: Optional[ConnectionQuality] = None,
        owns_limiter: bool = True,
    ):
        """
        Args:
            transport: HTTP layer
            pipeline: Pipeline wired with limiter, cache, retrier, telemetry
            pollers: Registry for scheduled refreshes
            connection: Connection quality used to size pages
            owns_limiter: Close the pipeline's limiter on aclose(); pass
                False when the limiter is shared with other clients
        """
        self.transport = transport
        self.pipeline = pipeline
        self.pollers = pollers or PollerRegistry()
        self.connection = connection
        self._owns_limiter = owns_limiter
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings=None,
        limiter: Optional[TokenBucketLimiter] = None,
        cache: Optional[TTLCache] = None,
        telemetry: Optional[TelemetryRecorder] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        connection: Optional[ConnectionQuality] = None,
    ) -> "FinSightApiClient":
        """
        Build a client from Settings, filling in anything not injected.

        A limiter passed in is treated as shared and is left open on aclose().
        """
        if settings is None:
            from config.settings import settings

        transport = HttpTransport(
            base_url=resolve_base_url(settings.api_environment, settings.api_base_url),
            api_key=settings.perplexity_api_key,
            default_timeout=settings.request_timeout_seconds,
            client=http_client,
        )
        owns_limiter = limiter is None
        if limiter is None:
            limiter = TokenBucketLimiter(
                max_tokens=settings.rate_limit_requests_per_minute,
                interval=settings.rate_limit_interval_seconds,
            )
        if cache is None:
            cache = build_cache_from_settings(settings)
            cache.connection = connection
        pipeline = RequestPipeline(
            limiter=limiter,
            cache=cache,
            retrier=BackoffRetrier(sleep=sleep),
            telemetry=telemetry or build_telemetry_from_settings(settings),
            transforms=default_registry(),
            policy=RetryPolicy.from_settings(settings),
            timeout=settings.request_timeout_seconds,
        )
        return cls(transport, pipeline, connection=connection, owns_limiter=owns_limiter)

    async def __aenter__(self) -> "FinSightApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("API client has been closed")

    async def _call(
        self,
        operation: str,
        category: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        transform_key: Optional[str] = None,
        options: RequestOptions = DEFAULT_OPTIONS,
        default_timeout: Optional[float] = None,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        identity: Optional[Dict[str, Any]] = None,
    ) -> Any:
        # `identity` is what the cache key and telemetry see; it defaults to
        # the body for POSTs and the query otherwise
        self._check_open()
        timeout = options.timeout or default_timeout

        async def fetch(correlation_id: str) -> Any:
            return await self.transport.request(
                method, path, correlation_id,
                params=params, json=body, timeout=timeout,
            )

        return await self.pipeline.call(
            operation,
            category,
            identity if identity is not None else (body if body is not None else params),
            fetch,
            transform_key=transform_key,
            force_fresh=options.force_fresh,
            use_cache=options.use_cache,
            timeout=timeout,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    async def get_tariff_alerts(
        self,
        countries: Optional[Sequence[str]] = None,
        priority_level: Optional[str] = None,
        limit: int = 50,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> List[Dict[str, Any]]:
        """Recent tariff alerts, optionally filtered by country and priority."""
        return await self._call(
            "tariff_alerts",
            CacheCategory.TARIFF_ALERTS,
            "/tariff-alerts",
            params={
                "countries": _join(countries),
                "priority_level": priority_level,
                "limit": limit,
            },
            transform_key="tariff_alerts",
            options=options,
        )

    async def get_market_news(
        self,
        topic: Optional[str] = None,
        limit: int = 5,
        include_analysis: bool = False,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> List[Dict[str, Any]]:
        """Market news articles. Page size shrinks on constrained connections."""
        return await self._call(
            "market_news",
            CacheCategory.MARKET_NEWS,
            "/market-news",
            params={
                "topic": topic or "financial markets",
                "limit": page_size_for(limit, self.connection),
                "include_analysis": _flag(include_analysis),
            },
            transform_key="market_news",
            options=options,
        )

    async def get_sankey_data(
        self,
        entity: str,
        timeframe: str = "quarterly",
        enhance_with_ai: bool = False,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> Dict[str, Any]:
        return await self._call(
            "sankey_data",
            CacheCategory.SANKEY_DATA,
            "/sankey-data",
            params={
                "entity": entity,
                "timeframe": timeframe,
                "enhance_with_ai": _flag(enhance_with_ai),
            },
            transform_key="sankey_data",
            options=options,
        )

    async def get_ai_insights(
        self,
        entity: str,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> Dict[str, Any]:
        return await self._call(
            "ai_insights",
            CacheCategory.AI_INSIGHTS,
            "/ai-insights",
            params={"entity": entity},
            options=options,
            default_timeout=AI_INSIGHTS_TIMEOUT,
        )

    async def get_simulation_inputs(
        self,
        scenario_id: Optional[str] = None,
        parameter_sets: Optional[Sequence[str]] = None,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> List[Dict[str, Any]]:
        return await self._call(
            "simulation_inputs",
            CacheCategory.SIMULATION_INPUTS,
            "/simulation/inputs",
            params={
                "scenario_id": scenario_id,
                "parameter_sets": _join(parameter_sets),
            },
            transform_key="simulation_inputs",
            options=options,
        )

    async def get_simulation_outputs(
        self,
        scenario_id: Optional[str] = None,
        simulation_count: int = 100,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> List[Dict[str, Any]]:
        return await self._call(
            "simulation_outputs",
            CacheCategory.SIMULATION_OUTPUTS,
            "/simulation/outputs",
            params={
                "scenario_id": scenario_id,
                "simulation_count": simulation_count,
            },
            transform_key="simulation_outputs",
            options=options,
            default_timeout=SIMULATION_OUTPUTS_TIMEOUT,
        )

    async def get_simulation_comparisons(
        self,
        scenario_id: Optional[str] = None,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> List[Dict[str, Any]]:
        return await self._call(
            "simulation_comparisons",
            CacheCategory.SIMULATION_COMPARISONS,
            "/simulation/comparisons",
            params={"scenario_id": scenario_id},
            transform_key="simulation_comparisons",
            options=options,
        )

    async def get_parameter_history(
        self,
        parameter_id: str,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> Dict[str, Any]:
        return await self._call(
            "parameter_history",
            CacheCategory.PARAMETER_HISTORY,
            f"/parameters/{parameter_id}/history",
            options=options,
            identity={"parameter_id": parameter_id},
        )

    async def run_economic_simulation(
        self,
        scenario: str,
        variables: Sequence[str],
        iterations: int = 1000,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> List[Dict[str, Any]]:
        """POST a simulation run. Identical runs are served from cache."""
        return await self._call(
            "economic_simulation",
            CacheCategory.ECONOMIC_SIMULATION,
            "/economic-simulation",
            transform_key="economic_simulation",
            options=options,
            default_timeout=ECONOMIC_SIMULATION_TIMEOUT,
            method="POST",
            body={
                "scenario": scenario,
                "variables": list(variables),
                "iterations": iterations,
            },
        )

    async def chat_completion(
        self,
        messages: Sequence[Dict[str, str]],
        model: Optional[str] = None,
        models: Optional[Sequence[str]] = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
        options: RequestOptions = DEFAULT_OPTIONS,
    ) -> str:
        """
        Chat completion with model fallback.

        Each retry steps down the model ladder. Malformed completions are
        retried as well, since a different model may answer properly.

        Returns:
            Content of the first choice
        """
        self._check_open()
        ladder = list(models or DEFAULT_MODEL_LADDER)
        if model is not None:
            ladder = [model] + [m for m in ladder if m != model]

        def request_body(model_name: str) -> Dict[str, Any]:
            return {
                "model": model_name,
                "messages": list(messages),
                "temperature": temperature,
                "top_p": 0.9,
                "max_tokens": max_tokens,
                "stream": False,
            }

        def fetcher_for(model_name: str) -> Fetcher:
            async def fetch(correlation_id: str) -> Any:
                return await self.transport.request(
                    "POST", "/chat/completions", correlation_id,
                    json=request_body(model_name), timeout=options.timeout,
                )
            return fetch

        return await self.pipeline.call(
            "chat_completion",
            CacheCategory.AI_INSIGHTS,
            request_body(ladder[0]),
            fetcher_for(ladder[0]),
            transform_key="chat_completion",
            force_fresh=options.force_fresh,
            use_cache=options.use_cache,
            policy=replace(self.pipeline.policy, retry_malformed=True),
            select_fallback=model_ladder(ladder, fetcher_for),
            timeout=options.timeout,
        )

    # =========================================================================
    # Polling, cache and telemetry
    # =========================================================================

    def start_polling(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
    ) -> asyncio.Task:
        """Run `job` every `interval` seconds until the client is closed."""
        self._check_open()
        return self.pollers.schedule(name, interval, job, run_immediately)

    async def stop_polling(self, name: str) -> bool:
        return await self.pollers.cancel(name)

    def clear_cache(self, cache_key: Optional[str] = None) -> int:
        """Clear one cache entry, or everything when no key is given."""
        return self.pipeline.cache.clear(cache_key)

    def telemetry_events(
        self,
        filter: Optional[TelemetryFilter] = None,
        limit: Optional[int] = None,
    ) -> List[TelemetryEvent]:
        return self.pipeline.telemetry.events(filter, limit=limit)

    def telemetry_summary(self, filter: Optional[TelemetryFilter] = None) -> TelemetrySummary:
        return self.pipeline.telemetry.summarize(filter)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "closed": self._closed,
            "cache": self.pipeline.cache.get_stats(),
            "rate_limiter": self.pipeline.limiter.get_stats(),
            "telemetry": self.telemetry_summary().to_dict(),
            "pollers": self.pollers.get_stats(),
            "pending_backoff_timers": self.pipeline.retrier.pending_sleeps,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        """
        Shut down: pollers, pending backoff timers, limiter loop (if owned),
        in-flight cache fetches, then the HTTP client.
        """
        if self._closed:
            return
        self._closed = True
        await self.pollers.shutdown()
        self.pipeline.retrier.cancel_pending()
        if self._owns_limiter:
            await self.pipeline.limiter.close()
        await self.pipeline.cache.dispose()
        await self.transport.aclose()
        logger.info("API client closed")


# Global API client instance
_api_client: Optional[FinSightApiClient] = None


def get_api_client() -> FinSightApiClient:
    """Get or create the global API client on the global rate limiter and cache."""
    global _api_client
    if _api_client is None or _api_client.closed:
        _api_client = FinSightApiClient.from_settings(
            limiter=get_rate_limiter(),
            cache=get_cache_manager(),
        )
    return _api_client


async def close_api_client() -> None:
    """Close the global API client, if one was created."""
    global _api_client
    if _api_client is not None:
        await _api_client.aclose()
        _api_client = None
