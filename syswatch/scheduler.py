import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Repeating schedule owned by one component.

    The loop task only sleeps and spawns ticks; each tick runs as its own task,
    so stop() disarms future ticks without cancelling one in flight. Unless
    allow_overlap is set, a tick that comes due while the previous one is
    still running is skipped.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        *,
        allow_overlap: bool = False,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = float(interval)
        self.callback = callback
        self.allow_overlap = allow_overlap
        self.ticks = 0
        self.skipped = 0
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def busy(self) -> bool:
        return bool(self._inflight)

    def start(self) -> bool:
        if self._task is not None:
            logger.warning("%s schedule already running", self.name)
            return False
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"{self.name}-schedule")
        return True

    def stop(self) -> bool:
        if self._task is None:
            return False
        self._task.cancel()
        self._task = None
        return True

    def trigger(self) -> Optional[asyncio.Task]:
        if self._inflight and not self.allow_overlap:
            self.skipped += 1
            logger.warning("%s tick skipped: previous tick still running", self.name)
            return None
        task = asyncio.get_running_loop().create_task(self._run_once(), name=f"{self.name}-tick")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight ticks without cancelling them. False on timeout."""
        if not self._inflight:
            return True
        _, pending = await asyncio.wait(list(self._inflight), timeout=timeout)
        return not pending

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.trigger()

    async def _run_once(self) -> None:
        self.ticks += 1
        try:
            await self.callback()
        except Exception:
            logger.exception("%s tick failed", self.name)
