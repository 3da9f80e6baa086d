"""
Retry with exponential backoff and jitter.

Built on tenacity's AsyncRetrying. The n-th retry waits
`min(max_delay, base_delay * 2**(n-1) + jitter)` with jitter drawn from
`[0, base_delay)`, so delays never decrease. A 429 carrying Retry-After waits
at least that long.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Set

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from .errors import RateLimitedError, RequestFailedError, is_retryable

logger = logging.getLogger("retry")

Operation = Callable[[], Awaitable[Any]]
# (attempt_number, last_error) -> replacement operation, or None to keep the current one
FallbackSelector = Callable[[int, Optional[BaseException]], Optional[Operation]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds on retry cost for one logical call. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    # Retry malformed responses (operation is idempotent-and-flaky)
    retry_malformed: bool = False

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )


@dataclass
class RetryResult:
    value: Any
    attempts: int


def compute_backoff_delay(
    retry_number: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay before the `retry_number`-th retry (1-based).

    Lies in [2^(n-1) * base, 2^(n-1) * base + base), capped at max_delay.
    """
    rng = rng or random
    exponential = policy.base_delay * (2 ** (retry_number - 1))
    jitter = rng.random() * policy.base_delay
    return min(policy.max_delay, exponential + jitter)


class wait_backoff_with_jitter(wait_base):
    """tenacity wait strategy applying compute_backoff_delay and Retry-After."""

    def __init__(self, policy: RetryPolicy, rng: Optional[random.Random] = None):
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = compute_backoff_delay(retry_state.attempt_number, self.policy, self.rng)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay


class BackoffRetrier:
    """
    Re-issues failed operations with bounded exponential backoff.

    Retry state lives entirely inside one execute() call. The retrier only
    keeps track of sleeps currently in progress so they can be cancelled
    on shutdown.

    Usage:
        retrier = BackoffRetrier()
        data = await retrier.execute(lambda: fetch(), RetryPolicy(max_attempts=3))
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            sleep: Coroutine used to wait between attempts
            rng: Random source for jitter
        """
        self._sleep = sleep
        self._rng = rng
        self._pending_sleeps: Set[asyncio.Task] = set()

    async def _tracked_sleep(self, seconds: float) -> None:
        task = asyncio.get_running_loop().create_task(self._sleep(seconds))
        self._pending_sleeps.add(task)
        try:
            await task
        finally:
            self._pending_sleeps.discard(task)

    def cancel_pending(self) -> int:
        """Cancel every backoff sleep in progress. Returns how many were cancelled."""
        pending = [t for t in self._pending_sleeps if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.info(f"Cancelled {len(pending)} pending backoff timer(s)")
        return len(pending)

    @property
    def pending_sleeps(self) -> int:
        return sum(1 for t in self._pending_sleeps if not t.done())

    async def execute(
        self,
        op: Operation,
        policy: RetryPolicy = RetryPolicy(),
        select_fallback: Optional[FallbackSelector] = None,
        operation: str = "",
    ) -> Any:
        """
        Run `op`, retrying retryable failures per `policy`.

        Returns:
            The value returned by the first successful attempt

        Raises:
            RequestFailedError: Non-retryable failure or attempts exhausted
        """
        result = await self.execute_detailed(op, policy, select_fallback, operation)
        return result.value

    async def execute_detailed(
        self,
        op: Operation,
        policy: RetryPolicy = RetryPolicy(),
        select_fallback: Optional[FallbackSelector] = None,
        operation: str = "",
    ) -> RetryResult:
        """Like execute(), but also reports how many attempts were made."""
        label = operation or getattr(op, "__name__", "operation")

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"{label} attempt {retry_state.attempt_number}/{policy.max_attempts} "
                f"failed ({type(error).__name__}: {error}), retrying in {delay:.2f}s"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_backoff_with_jitter(policy, self._rng),
            retry=retry_if_exception(
                lambda e: is_retryable(e, allow_malformed=policy.retry_malformed)
            ),
            sleep=self._tracked_sleep,
            before_sleep=log_retry,
        )

        current = op
        attempts = 0
        last_error: Optional[BaseException] = None
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1 and select_fallback is not None:
                        replacement = select_fallback(attempts, last_error)
                        if replacement is not None:
                            logger.info(f"{label} attempt {attempts} using fallback")
                            current = replacement
                    try:
                        value = await current()
                    except Exception as e:
                        last_error = e
                        raise
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"{label} gave up after {attempts} attempt(s): {cause}")
            raise RequestFailedError(cause, attempts, operation) from cause
        except Exception as e:
            logger.error(f"{label} failed with non-retryable error: {e}")
            raise RequestFailedError(e, attempts, operation) from e

        return RetryResult(value=value, attempts=attempts)


def model_ladder(
    models: Sequence[str],
    make_op: Callable[[str], Any],
) -> Callable[[int, Optional[BaseException]], Any]:
    """
    Fallback selector stepping down a fixed list of models.

    Attempt 1 uses models[0] (the caller's own op), attempt 2 models[1], and
    so on; once the list runs out the last model is kept. `make_op` builds
    whatever callable the consumer expects (a retrier Operation or a
    pipeline fetcher).
    """
    models = list(models)

    def select(attempt_number: int, last_error: Optional[BaseException]) -> Any:
        index = attempt_number - 1
        if index >= len(models):
            return None
        logger.debug(f"Falling back to model {models[index]} after {last_error}")
        return make_op(models[index])

    return select
