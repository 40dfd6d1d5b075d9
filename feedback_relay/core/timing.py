"""Clock helpers and the periodic task used by the poller and the broker watchdog."""

import asyncio
import time
from typing import Awaitable, Callable, Optional
import structlog

log = structlog.get_logger()


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def age_seconds(timestamp_ms: float, now: Optional[int] = None) -> float:
    """Seconds elapsed since an epoch-millisecond timestamp."""
    current = now_ms() if now is None else now
    return (current - timestamp_ms) / 1000.0


class PeriodicTask:
    """Run a coroutine function at a fixed interval on the running loop.

    The first run happens immediately after `start()`. Starting an already
    running task and stopping a stopped one are both no-ops. A failing
    iteration is logged and the loop keeps going.
    """

    def __init__(
        self,
        func: Callable[[], Awaitable[None]],
        interval: float,
        name: str = "periodic",
    ):
        self.func = func
        self.interval = interval
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=self.name
        )
        log.debug("periodic_task_started", name=self.name, interval=self.interval)
        return True

    def stop(self) -> bool:
        """Cancel the loop. Returns False if it was not running."""
        task, self._task = self._task, None
        if task is None or task.done():
            return False
        task.cancel()
        log.debug("periodic_task_stopped", name=self.name)
        return True

    async def wait_stopped(self) -> None:
        """Stop the loop and wait until the cancelled task has finished."""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("periodic_task_failed", name=self.name, error=str(e))
            await asyncio.sleep(self.interval)
