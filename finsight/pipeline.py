"""
Request pipeline: cache -> rate limit -> retry -> telemetry -> transform.

One RequestPipeline owns one limiter, cache, retrier, telemetry recorder and
transform registry, all passed in by the caller. Several pipelines may share
a limiter (combined per-host limit). Sharing a cache is safe because every
key is namespaced by operation name.
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .cache.manager import TTLCache
from .errors import RequestFailedError, RequestTimeoutError, error_code
from .rate_limiter import TokenBucketLimiter
from .retry import BackoffRetrier, RetryPolicy
from .telemetry.recorder import TelemetryRecorder
from .transforms import TransformRegistry

logger = logging.getLogger("pipeline")

# Seconds one attempt may take when the call gives no timeout
DEFAULT_ATTEMPT_TIMEOUT = 30.0

# Takes the correlation id, returns the raw decoded payload
Fetcher = Callable[[str], Awaitable[Any]]
# (attempt_number, last_error) -> replacement fetcher, or None
FetcherFallback = Callable[[int, Optional[BaseException]], Optional[Fetcher]]


def make_cache_key(operation: str, params: Optional[Mapping[str, Any]]) -> str:
    """
    Deterministic key from operation name and parameters.

    Parameter order doesn't matter and None values are dropped, so
    `{"a": 1, "b": None}` and `{"a": 1}` share a key.
    """
    canonical = {k: v for k, v in (params or {}).items() if v is not None}
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return f"{operation}:{encoded}"


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class RequestPipeline:
    """
    Runs one logical API call through every resilience layer.

    Usage:
        pipeline = RequestPipeline(limiter, cache, retrier, telemetry, transforms)
        alerts = await pipeline.call(
            "tariff_alerts", CacheCategory.TARIFF_ALERTS, {"countries": "Vietnam"},
            fetcher=lambda cid: transport.request("GET", "/tariff-alerts", cid),
            transform_key="tariff_alerts",
        )
    """

    def __init__(
        self,
        limiter: TokenBucketLimiter,
        cache: TTLCache,
        retrier: BackoffRetrier,
        telemetry: TelemetryRecorder,
        transforms: TransformRegistry,
        policy: RetryPolicy = RetryPolicy(),
        timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
    ):
        self.limiter = limiter
        self.cache = cache
        self.retrier = retrier
        self.telemetry = telemetry
        self.transforms = transforms
        self.policy = policy
        self.timeout = timeout

    async def call(
        self,
        operation: str,
        category: str,
        params: Optional[Mapping[str, Any]],
        fetcher: Fetcher,
        transform_key: Optional[str] = None,
        force_fresh: bool = False,
        use_cache: bool = True,
        policy: Optional[RetryPolicy] = None,
        select_fallback: Optional[FetcherFallback] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Return the (transformed) result of `operation`, from cache when live.

        Args:
            operation: Operation name; also the cache key namespace
            category: Cache category selecting the TTL
            params: Request parameters (cache identity and telemetry)
            fetcher: Performs the network call for a correlation id
            transform_key: Registered transform applied to the raw payload
            force_fresh: Bypass a live cache entry
            use_cache: When False, neither read nor write the cache
            policy: Retry policy for this call (defaults to the pipeline's)
            select_fallback: Alternate fetcher per retry attempt
            timeout: Seconds allowed per attempt (defaults to the pipeline's)

        Raises:
            RequestFailedError: The call failed terminally
        """
        params = dict(params or {})

        async def fetch() -> Any:
            return await self._execute(
                operation, params, fetcher, transform_key,
                policy or self.policy, select_fallback,
                timeout if timeout is not None else self.timeout,
            )

        if not use_cache:
            return await fetch()

        cache_key = make_cache_key(operation, params)
        return await self.cache.get_or_fetch(
            cache_key, category, fetch, force_fresh=force_fresh
        )

    async def _execute(
        self,
        operation: str,
        params: Dict[str, Any],
        fetcher: Fetcher,
        transform_key: Optional[str],
        policy: RetryPolicy,
        select_fallback: Optional[FetcherFallback],
        timeout: float,
    ) -> Any:
        # One token per logical call; retries don't take another and a
        # timed-out attempt doesn't give one back
        await self.limiter.acquire()

        correlation_id = new_correlation_id()
        started_at = time.time()
        started = time.perf_counter()
        logger.debug(f"{operation} starting (request {correlation_id})")

        def attempt(fn: Fetcher) -> Callable[[], Awaitable[Any]]:
            async def run() -> Any:
                try:
                    raw = await asyncio.wait_for(fn(correlation_id), timeout)
                except asyncio.TimeoutError:
                    raise RequestTimeoutError(
                        f"{operation} timed out after {timeout}s"
                    ) from None
                return self.transforms.apply(transform_key, raw)
            return run

        fallback = None
        if select_fallback is not None:
            def fallback(attempt_number: int, last_error: Optional[BaseException]):
                replacement = select_fallback(attempt_number, last_error)
                return attempt(replacement) if replacement is not None else None

        try:
            result = await self.retrier.execute_detailed(
                attempt(fetcher), policy, fallback, operation
            )
        except RequestFailedError as e:
            self.telemetry.record(
                operation=operation,
                started_at=started_at,
                ended_at=started_at + (time.perf_counter() - started),
                success=False,
                params=params,
                error_code=error_code(e),
                correlation_id=correlation_id,
                attempts=e.attempts,
            )
            raise

        event = self.telemetry.record(
            operation=operation,
            started_at=started_at,
            ended_at=started_at + (time.perf_counter() - started),
            success=True,
            params=params,
            correlation_id=correlation_id,
            attempts=result.attempts,
        )
        logger.debug(
            f"{operation} succeeded in {event.duration_ms:.0f}ms "
            f"after {result.attempts} attempt(s)"
        )
        return result.value
