"""
Backoff retrier tests: delay bounds, attempt limits, error classification,
Retry-After, fallback selection and cancellation of pending timers.
"""
import asyncio
import random
from email.utils import format_datetime
from datetime import datetime, timedelta, timezone

import pytest

from finsight.errors import (
    ClientError,
    MalformedResponseError,
    RateLimitedError,
    RequestFailedError,
    RequestTimeoutError,
    TransientError,
    error_code,
    is_retryable,
    parse_retry_after,
)
from finsight.retry import (
    BackoffRetrier,
    RetryPolicy,
    compute_backoff_delay,
    model_ladder,
)


class RecordingSleep:
    """Records requested delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ScriptedOp:
    """Raises the scripted errors in order, then returns `result`."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def retrier(sleep):
    return BackoffRetrier(sleep=sleep, rng=random.Random(42))


POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)


# =============================================================================
# Backoff bounds
# =============================================================================

@pytest.mark.asyncio
async def test_three_failures_reject_without_fourth_attempt(retrier, sleep):
    op = ScriptedOp(*[TransientError("503") for _ in range(5)])

    with pytest.raises(RequestFailedError) as exc_info:
        await retrier.execute(op, POLICY)

    assert op.calls == 3
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.cause, TransientError)
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_delays_are_within_bounds_and_non_decreasing(retrier, sleep):
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=10.0)
    op = ScriptedOp(*[TransientError("reset") for _ in range(5)])

    with pytest.raises(RequestFailedError):
        await retrier.execute(op, policy)

    assert len(sleep.delays) == 4
    for n, delay in enumerate(sleep.delays, start=1):
        low = 2 ** (n - 1) * 1.0
        assert low <= delay < low + 1.0
    assert sleep.delays == sorted(sleep.delays)


def test_backoff_delay_is_capped():
    rng = random.Random(0)
    assert compute_backoff_delay(5, POLICY, rng) == 10.0
    for _ in range(50):
        delay = compute_backoff_delay(1, POLICY, rng)
        assert 1.0 <= delay < 2.0


@pytest.mark.asyncio
async def test_success_after_failures_reports_attempts(retrier):
    op = ScriptedOp(RequestTimeoutError("slow"), TransientError("502"), result={"ok": True})

    result = await retrier.execute_detailed(op, POLICY)

    assert result.value == {"ok": True}
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_retry_state_is_not_shared_between_calls(retrier):
    first = ScriptedOp(TransientError("x"), TransientError("x"))
    second = ScriptedOp(TransientError("x"), TransientError("x"))

    assert (await retrier.execute_detailed(first, POLICY)).attempts == 3
    assert (await retrier.execute_detailed(second, POLICY)).attempts == 3


# =============================================================================
# Classification
# =============================================================================

@pytest.mark.asyncio
async def test_client_error_is_not_retried(retrier, sleep):
    op = ScriptedOp(ClientError("not found", status_code=404))

    with pytest.raises(RequestFailedError) as exc_info:
        await retrier.execute(op, POLICY)

    assert op.calls == 1
    assert exc_info.value.attempts == 1
    assert exc_info.value.status_code == 404
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_malformed_response_retried_only_when_flaky(retrier):
    strict = ScriptedOp(MalformedResponseError("bad json"))
    with pytest.raises(RequestFailedError):
        await retrier.execute(strict, POLICY)
    assert strict.calls == 1

    flaky = ScriptedOp(MalformedResponseError("bad json"))
    policy = RetryPolicy(max_attempts=3, retry_malformed=True)
    assert await retrier.execute(flaky, policy) == "ok"
    assert flaky.calls == 2


@pytest.mark.asyncio
async def test_retry_after_hint_extends_delay(retrier, sleep):
    op = ScriptedOp(RateLimitedError(retry_after=7.0))

    assert await retrier.execute(op, POLICY) == "ok"
    assert sleep.delays == [7.0]


@pytest.mark.asyncio
async def test_short_retry_after_does_not_shorten_backoff(retrier, sleep):
    op = ScriptedOp(RateLimitedError(retry_after=0.1))

    await retrier.execute(op, POLICY)
    assert 1.0 <= sleep.delays[0] < 2.0


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    TimeoutError("read timed out"),
    asyncio.TimeoutError(),
    ConnectionResetError("connection reset by peer"),
])
async def test_builtin_timeouts_and_resets_are_retried(retrier, error):
    op = ScriptedOp(error)

    result = await retrier.execute_detailed(op, POLICY)

    assert result.value == "ok"
    assert result.attempts == 2


def test_error_classification():
    assert is_retryable(TransientError("x"))
    assert is_retryable(RequestTimeoutError("x"))
    assert is_retryable(RateLimitedError())
    assert not is_retryable(ClientError("x", status_code=400))
    assert not is_retryable(MalformedResponseError("x"))
    assert is_retryable(MalformedResponseError("x"), allow_malformed=True)
    assert is_retryable(TimeoutError())
    assert is_retryable(ConnectionError())
    assert not is_retryable(KeyError("x"))


def test_error_codes():
    assert error_code(RequestTimeoutError("x")) == "timeout"
    assert error_code(RateLimitedError()) == "429"
    assert error_code(ClientError("x", status_code=403)) == "403"
    assert error_code(MalformedResponseError("x")) == "malformed"
    assert error_code(RequestFailedError(TransientError("x", status_code=503), 3)) == "503"
    assert error_code(TimeoutError()) == "timeout"
    assert error_code(RuntimeError("x")) == "RuntimeError"


def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("-3") == 0.0

    later = datetime.now(timezone.utc) + timedelta(seconds=30)
    parsed = parse_retry_after(format_datetime(later, usegmt=True))
    assert 25 <= parsed <= 31


# =============================================================================
# Fallback selection
# =============================================================================

@pytest.mark.asyncio
async def test_fallback_replaces_operation_on_retry(retrier):
    primary = ScriptedOp(TransientError("overloaded"), result="primary")
    mirror = ScriptedOp(result="mirror")
    seen = []

    def select(attempt_number, last_error):
        seen.append((attempt_number, type(last_error).__name__))
        return mirror

    assert await retrier.execute(primary, POLICY, select_fallback=select) == "mirror"
    assert seen == [(2, "TransientError")]
    assert primary.calls == 1


@pytest.mark.asyncio
async def test_model_ladder_steps_down_and_holds_last(retrier):
    used = []

    def make_op(model):
        async def op():
            used.append(model)
            raise TransientError(f"{model} unavailable")
        return op

    policy = RetryPolicy(max_attempts=4)
    ladder = model_ladder(["large", "medium", "small"], make_op)

    with pytest.raises(RequestFailedError):
        await retrier.execute(make_op("large"), policy, select_fallback=ladder)

    assert used == ["large", "medium", "small", "small"]


# =============================================================================
# Cancellation
# =============================================================================

@pytest.mark.asyncio
async def test_cancel_pending_stops_backoff_sleep():
    retrier = BackoffRetrier()
    op = ScriptedOp(TransientError("down"))
    policy = RetryPolicy(max_attempts=3, base_delay=100.0, max_delay=100.0)

    task = asyncio.create_task(retrier.execute(op, policy))
    await asyncio.sleep(0.01)
    assert retrier.pending_sleeps == 1

    assert retrier.cancel_pending() == 1
    with pytest.raises(asyncio.CancelledError):
        await task
    assert op.calls == 1
