"""
Cancellable pollers.

Each poller is an asyncio task tracked by name, so shutdown can cancel every
one of them and wait until they have actually stopped.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger("scheduling")

Job = Callable[[], Awaitable[Any]]


class PollerRegistry:
    """
    Runs jobs on a fixed interval until cancelled.

    A job that raises is logged and the poller keeps going; only
    cancellation stops it.

    Usage:
        pollers = PollerRegistry()
        pollers.schedule("vietnam_alerts", 300, lambda: client.get_tariff_alerts(["Vietnam"]))
        ...
        await pollers.shutdown()
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._runs: Dict[str, int] = {}
        self._failures: Dict[str, int] = {}

    def schedule(
        self,
        name: str,
        interval: float,
        job: Job,
        run_immediately: bool = True,
    ) -> asyncio.Task:
        """
        Start polling `job` every `interval` seconds.

        Raises:
            ValueError: If a poller with this name is already running
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            raise ValueError(f"Poller '{name}' is already running")

        self._runs[name] = 0
        self._failures[name] = 0
        task = asyncio.get_running_loop().create_task(
            self._run(name, interval, job, run_immediately),
            name=f"poller:{name}",
        )
        self._tasks[name] = task
        logger.info(f"Scheduled poller '{name}' every {interval}s")
        return task

    async def _run(self, name: str, interval: float, job: Job, run_immediately: bool) -> None:
        if not run_immediately:
            await asyncio.sleep(interval)
        while True:
            try:
                await job()
                self._runs[name] += 1
            except Exception as e:
                self._failures[name] += 1
                logger.warning(f"Poller '{name}' run failed: {e}")
            await asyncio.sleep(interval)

    async def cancel(self, name: str) -> bool:
        """Stop one poller. Returns False if it wasn't running."""
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info(f"Cancelled poller '{name}'")
        return True

    @property
    def active(self) -> List[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> int:
        """Cancel all pollers and wait for them to stop. Returns how many were running."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if tasks:
            logger.info(f"Shut down {len(tasks)} poller(s)")
        return len(tasks)

    def get_stats(self) -> Dict[str, Any]:
        return {
            name: {
                "active": not self._tasks[name].done() if name in self._tasks else False,
                "runs": self._runs.get(name, 0),
                "failures": self._failures.get(name, 0),
            }
            for name in self._runs
        }
