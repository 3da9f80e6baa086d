"""
Token bucket rate limiting for outbound API requests.

Callers await `acquire()`; it resolves once a token has been consumed on
their behalf. When the bucket is empty, callers join a FIFO queue that a
single refill loop drains as whole intervals elapse, so admission order
follows arrival order even under bursty load.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

logger = logging.getLogger("ratelimit")

# Configuration
RATE_LIMIT_REQUESTS = 60  # Tokens per window
RATE_LIMIT_WINDOW_SECONDS = 60.0  # Window size in seconds

# Floor for the refill loop's sleep so a just-early wakeup can't spin
MIN_WAIT_SECONDS = 0.001


@dataclass
class TokenBucket:
    """Mutable bucket state. Only TokenBucketLimiter touches it."""
    tokens: float
    max_tokens: int
    refill_per_interval: int
    interval: float
    last_refill_at: float


class TokenBucketLimiter:
    """
    Bounds outbound request rate per time window.

    Refill is discrete: every whole `interval` that has elapsed adds
    `refill_per_interval` tokens (capped at `max_tokens`) and
    `last_refill_at` advances by exactly those intervals.

    One limiter can be shared by several pipelines to enforce a combined
    per-host limit.

    Usage:
        limiter = TokenBucketLimiter(max_tokens=60, interval=60.0)
        await limiter.acquire()
    """

    def __init__(
        self,
        max_tokens: int = RATE_LIMIT_REQUESTS,
        interval: float = RATE_LIMIT_WINDOW_SECONDS,
        refill_per_interval: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the limiter with a full bucket.

        Args:
            max_tokens: Bucket capacity
            interval: Seconds per refill step
            refill_per_interval: Tokens added per elapsed interval (defaults to max_tokens)
            clock: Monotonic time source, in seconds
            sleep: Coroutine used by the refill loop to wait
        """
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be positive")
        refill = max_tokens if refill_per_interval is None else refill_per_interval
        if refill < 1:
            raise ValueError("refill_per_interval must be at least 1")

        self._clock = clock
        self._sleep = sleep
        self._bucket = TokenBucket(
            tokens=max_tokens,
            max_tokens=max_tokens,
            refill_per_interval=refill,
            interval=interval,
            last_refill_at=clock(),
        )
        self._waiters: Deque[asyncio.Future] = deque()
        self._refill_task: Optional[asyncio.Task] = None
        self._closed = False

        # Stats tracking
        self._stats = {
            "granted_immediately": 0,
            "granted_after_wait": 0,
        }

    async def acquire(self) -> None:
        """
        Wait for and consume one token.

        Raises:
            RuntimeError: If the limiter has been closed
            asyncio.CancelledError: If the caller is cancelled while queued
        """
        if self._closed:
            raise RuntimeError("Rate limiter is closed")

        self._prune_cancelled()
        if not self._waiters:
            self._refill()
            if self._bucket.tokens >= 1:
                self._bucket.tokens -= 1
                self._stats["granted_immediately"] += 1
                return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"Bucket empty, queued (waiters: {len(self._waiters)})")
        self._ensure_refill_loop()

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Token was granted but the caller went away before using it
                self._bucket.tokens = min(
                    self._bucket.max_tokens, self._bucket.tokens + 1
                )
            raise

    def _refill(self) -> None:
        """Add tokens for every whole interval elapsed since the last refill."""
        bucket = self._bucket
        elapsed = self._clock() - bucket.last_refill_at
        whole_intervals = int(elapsed // bucket.interval)
        if whole_intervals <= 0:
            return
        bucket.tokens = min(
            bucket.max_tokens,
            bucket.tokens + whole_intervals * bucket.refill_per_interval,
        )
        bucket.last_refill_at += whole_intervals * bucket.interval

    def _seconds_until_refill(self) -> float:
        bucket = self._bucket
        wait = bucket.last_refill_at + bucket.interval - self._clock()
        return max(MIN_WAIT_SECONDS, wait)

    def _prune_cancelled(self) -> None:
        while self._waiters and self._waiters[0].done():
            self._waiters.popleft()

    def _ensure_refill_loop(self) -> None:
        if self._refill_task is None or self._refill_task.done():
            self._refill_task = asyncio.get_running_loop().create_task(
                self._refill_loop()
            )

    async def _refill_loop(self) -> None:
        """Grant tokens to queued waiters in arrival order until the queue is empty."""
        while True:
            self._refill()
            while self._waiters and self._bucket.tokens >= 1:
                waiter = self._waiters.popleft()
                if waiter.done():
                    # Cancelled while queued; costs nothing
                    continue
                self._bucket.tokens -= 1
                self._stats["granted_after_wait"] += 1
                waiter.set_result(None)

            self._prune_cancelled()
            if not self._waiters:
                return

            wait = self._seconds_until_refill()
            logger.debug(
                f"Waiting {wait:.3f}s for refill ({len(self._waiters)} queued)"
            )
            await self._sleep(wait)

    def available_tokens(self) -> int:
        """Tokens available right now, after applying any pending refill."""
        self._refill()
        return int(self._bucket.tokens)

    @property
    def pending_waiters(self) -> int:
        """Number of callers currently queued for a token."""
        return sum(1 for w in self._waiters if not w.done())

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Stop the refill loop and cancel every queued waiter."""
        if self._closed:
            return
        self._closed = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.cancel()

        task, self._refill_task = self._refill_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Rate limiter closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get limiter statistics."""
        return {
            "available_tokens": self.available_tokens(),
            "max_tokens": self._bucket.max_tokens,
            "refill_per_interval": self._bucket.refill_per_interval,
            "interval_seconds": self._bucket.interval,
            "pending_waiters": self.pending_waiters,
            "granted_immediately": self._stats["granted_immediately"],
            "granted_after_wait": self._stats["granted_after_wait"],
        }


# Global rate limiter instance
_rate_limiter: Optional[TokenBucketLimiter] = None


def get_rate_limiter() -> TokenBucketLimiter:
    """Get the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None or _rate_limiter.closed:
        from config.settings import settings
        _rate_limiter = TokenBucketLimiter(
            max_tokens=settings.rate_limit_requests_per_minute,
            interval=settings.rate_limit_interval_seconds,
        )
    return _rate_limiter
