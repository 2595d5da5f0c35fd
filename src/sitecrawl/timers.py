from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)


class TimerHandle:
    __slots__ = ("due", "fn", "args", "cancelled")

    def __init__(self, due: float, fn: Callable[..., Any], args: tuple[Any, ...]) -> None:
        self.due = due
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class DelayQueue:
    """Runs callbacks after a delay on one background thread.

    Callbacks run one at a time and should return quickly. Exceptions are
    logged and do not stop the queue.
    """

    def __init__(
        self,
        *,
        name: str = "sitecrawl-timers",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def __len__(self) -> int:
        with self._cond:
            return sum(1 for _, _, h in self._heap if not h.cancelled)

    def call_later(self, delay_s: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self._clock() + max(0.0, delay_s), fn, args)
        with self._cond:
            if self._closed:
                handle.cancel()
                return handle
            heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
            self._cond.notify()
        return handle

    def close(self) -> None:
        with self._cond:
            self._closed = True
            for _, _, handle in self._heap:
                handle.cancel()
            self._heap.clear()
            self._cond.notify()

    def _next_due(self) -> TimerHandle | None:
        with self._cond:
            while not self._closed:
                if not self._heap:
                    self._cond.wait()
                    continue
                due, _, handle = self._heap[0]
                wait_s = due - self._clock()
                if wait_s > 0:
                    self._cond.wait(wait_s)
                    continue
                heapq.heappop(self._heap)
                return handle
        return None

    def _run(self) -> None:
        while True:
            handle = self._next_due()
            if handle is None:
                return
            if handle.cancelled:
                continue
            try:
                handle.fn(*handle.args)
            except Exception:
                logger.exception("Delayed call %r failed", handle.fn)
