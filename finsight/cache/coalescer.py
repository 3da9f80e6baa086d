"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same data, only one
upstream call is made and all requesters share the result.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    task: asyncio.Task
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one upstream call.

    Pattern:
    - First request for a key starts the fetch as a task
    - Subsequent requests for the same key await that task
    - When the fetch completes, all waiters receive the same result or error
    - The key is removed from the registry on completion, success or failure

    The fetch runs as its own task, so one waiter being cancelled does not
    cancel the fetch for everyone else.

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_fetch(
            cache_key="tariff_alerts:{...}",
            fetch_fn=lambda: make_api_call(),
        )
    """

    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Coroutine function to call if we need to fetch

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            Exception: Any error from fetch_fn is propagated to every caller
        """
        in_flight = self._in_flight.get(cache_key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {cache_key} "
                f"(waiters: {in_flight.waiter_count})"
            )
        else:
            logger.debug(f"Initiating fetch for {cache_key}")
            task = asyncio.get_running_loop().create_task(fetch_fn())
            in_flight = InFlightRequest(task=task)
            self._in_flight[cache_key] = in_flight
            task.add_done_callback(lambda t: self._finished(cache_key, t))

        return await asyncio.shield(in_flight.task)

    def _finished(self, cache_key: str, task: asyncio.Task) -> None:
        current = self._in_flight.get(cache_key)
        if current is not None and current.task is task:
            del self._in_flight[cache_key]
        if task.cancelled():
            logger.debug(f"Fetch cancelled for {cache_key}")
        elif task.exception() is not None:
            logger.warning(f"Fetch failed for {cache_key}: {task.exception()}")

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    async def cancel_all(self) -> None:
        """Cancel every in-flight fetch and wait for them to finish."""
        tasks = [entry.task for entry in self._in_flight.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
