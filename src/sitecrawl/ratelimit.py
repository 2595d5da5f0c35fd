from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class Ticket:
    """One-shot permission to send a request.

    Nothing has to be given back once granted; the next ticket is released
    by the clock, not by the holder.
    """

    def __init__(self) -> None:
        self._done = threading.Event()
        self.granted = False
        self.cancelled = False
        self.granted_at: float | None = None

    def wait(self, timeout: float | None = None) -> bool:
        self._done.wait(timeout)
        return self.granted

    def _grant(self, at: float) -> None:
        self.granted = True
        self.granted_at = at
        self._done.set()

    def _cancel(self) -> None:
        self.cancelled = True
        self._done.set()


class RateLimiter:
    """FIFO serializer: releases at most one waiting ticket per interval.

    A single releaser thread pops tickets in arrival order. Cancelled tickets
    are dropped without using up a slot. The queue is the only per-request
    state, so any number of requesters can wait at once.
    """

    def __init__(
        self,
        interval_s: float,
        *,
        name: str = "sitecrawl-ratelimit",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_s < 0:
            raise ValueError("interval_s must be >= 0")
        self.interval_s = interval_s
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Ticket] = deque()
        self._last_release: float | None = None
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def pending(self) -> int:
        with self._cond:
            return sum(1 for t in self._queue if not t.cancelled)

    def enqueue(self) -> Ticket:
        ticket = Ticket()
        with self._cond:
            if self._closed:
                ticket._cancel()
                return ticket
            self._queue.append(ticket)
            self._cond.notify_all()
        return ticket

    def cancel(self, ticket: Ticket) -> bool:
        """Withdraw a ticket. Returns False if it was already granted."""

        with self._cond:
            if ticket.granted:
                return False
            ticket._cancel()
            self._cond.notify_all()
            return True

    def acquire(self, timeout: float | None = None) -> bool:
        ticket = self.enqueue()
        if ticket.wait(timeout):
            return True
        # Lost the race with the releaser: the slot is ours after all.
        return not self.cancel(ticket)

    def slow_down(self, interval_s: float) -> bool:
        """Raise the interval to ``interval_s``; never lowers it."""

        with self._cond:
            if interval_s <= self.interval_s:
                return False
            self.interval_s = interval_s
            self._cond.notify_all()
        logger.info("Send interval raised to %.3fs", interval_s)
        return True

    def close(self) -> None:
        with self._cond:
            self._closed = True
            while self._queue:
                self._queue.popleft()._cancel()
            self._cond.notify_all()

    def _run(self) -> None:
        with self._cond:
            while not self._closed:
                while self._queue and self._queue[0].cancelled:
                    self._queue.popleft()
                if not self._queue:
                    self._cond.wait()
                    continue

                if self._last_release is not None:
                    wait_s = self._last_release + self.interval_s - self._clock()
                    if wait_s > 0:
                        self._cond.wait(wait_s)
                        continue

                ticket = self._queue.popleft()
                now = self._clock()
                ticket._grant(now)
                self._last_release = now
                logger.debug("Released send slot (%d waiting)", len(self._queue))
