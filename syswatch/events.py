import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    event_type: str
    payload: Any
    published_at: float = field(default_factory=time.time)


Handler = Callable[[Event], Any]


@dataclass
class _Sub:
    event_type: str
    handler: Handler
    queue: asyncio.Queue
    worker: Optional[asyncio.Task] = None


def _matches(pattern: str, event_type: str) -> bool:
    if pattern == "*" or pattern == event_type:
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return False


class EventBus:
    """
    In-process publish/subscribe on the event loop.

    - publish never blocks and never raises into the emitter
    - each subscriber has its own queue and worker task, so a subscriber
      sees events in publish order
    - a full subscriber queue drops its oldest event
    - handler failures are logged and isolated
    """

    def __init__(self, *, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subs: List[_Sub] = []
        self._running = False
        self._published = 0
        self._delivered = 0
        self._dropped = 0
        self._handler_errors = 0

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, event_type: str, handler: Handler) -> None:
        """
        event_type supports:
        - exact match ("metrics")
        - prefix match ("alert.*")
        - wildcard all ("*")
        """
        if not callable(handler):
            raise ValueError("handler must be callable")
        sub = _Sub(event_type=str(event_type), handler=handler, queue=asyncio.Queue(maxsize=self.max_queue_size))
        self._subs.append(sub)
        if self._running:
            self._start_worker(sub)

    def unsubscribe(self, handler: Handler) -> int:
        keep, removed = [], 0
        for sub in self._subs:
            if sub.handler is handler:
                removed += 1
                if sub.worker is not None:
                    sub.worker.cancel()
            else:
                keep.append(sub)
        self._subs = keep
        return removed

    def publish(self, event_type: str, payload: Any) -> int:
        """Queue the event for every matching subscriber. Returns how many."""
        ev = Event(event_type=event_type, payload=payload)
        self._published += 1
        queued = 0
        for sub in self._subs:
            if not _matches(sub.event_type, event_type):
                continue
            if sub.queue.full():
                sub.queue.get_nowait()
                sub.queue.task_done()
                self._dropped += 1
                logger.warning("Subscriber queue full for %s, dropped oldest event", sub.event_type)
            sub.queue.put_nowait(ev)
            queued += 1
        return queued

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for sub in self._subs:
            self._start_worker(sub)

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        if not self._running:
            return
        pending = [sub.queue.join() for sub in self._subs]
        if pending:
            try:
                await asyncio.wait_for(asyncio.gather(*pending), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Event bus shutdown grace expired with events still queued")
        self._running = False
        workers = [sub.worker for sub in self._subs if sub.worker is not None]
        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for sub in self._subs:
            sub.worker = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "subscribers": len(self._subs),
            "published_total": self._published,
            "delivered_total": self._delivered,
            "dropped_total": self._dropped,
            "handler_errors_total": self._handler_errors,
            "queue_depth": sum(sub.queue.qsize() for sub in self._subs),
        }

    # ---- internals ----
    def _start_worker(self, sub: _Sub) -> None:
        name = getattr(sub.handler, "__name__", "handler")
        sub.worker = asyncio.get_running_loop().create_task(self._worker(sub), name=f"eventbus-{sub.event_type}-{name}")

    async def _worker(self, sub: _Sub) -> None:
        while True:
            ev = await sub.queue.get()
            try:
                result = sub.handler(ev)
                if inspect.isawaitable(result):
                    await result
                self._delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self._handler_errors += 1
                logger.exception("Event handler failed for %s", ev.event_type)
            finally:
                sub.queue.task_done()
