from __future__ import annotations

import threading
import time

import pytest

from sitecrawl.ratelimit import RateLimiter

INTERVAL = 0.03


@pytest.fixture
def limiter():
    lim = RateLimiter(INTERVAL)
    yield lim
    lim.close()


def test_releases_in_fifo_order_with_minimum_gap(limiter):
    tickets = [limiter.enqueue() for _ in range(6)]
    for t in tickets:
        assert t.wait(2)

    times = [t.granted_at for t in tickets]
    assert times == sorted(times)
    gaps = [b - a for a, b in zip(times, times[1:])]
    assert all(g >= INTERVAL - 1e-9 for g in gaps)


def test_first_ticket_is_released_immediately(limiter):
    started = time.monotonic()
    assert limiter.acquire(timeout=1)
    assert time.monotonic() - started < INTERVAL


def test_concurrent_requesters_are_all_served(limiter):
    granted: list[int] = []
    lock = threading.Lock()

    def worker(i):
        if limiter.acquire(timeout=5):
            with lock:
                granted.append(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert sorted(granted) == list(range(10))


def test_cancelled_ticket_does_not_use_a_slot():
    lim = RateLimiter(0.2)
    try:
        first = lim.enqueue()
        assert first.wait(1)
        doomed = lim.enqueue()
        survivor = lim.enqueue()

        assert lim.cancel(doomed)
        assert survivor.wait(1)
        assert not doomed.granted
        assert doomed.cancelled
        # Survivor took the slot right after the first one.
        assert survivor.granted_at - first.granted_at < 0.2 * 2
    finally:
        lim.close()


def test_cannot_cancel_a_granted_ticket(limiter):
    ticket = limiter.enqueue()
    assert ticket.wait(1)
    assert not limiter.cancel(ticket)


def test_acquire_times_out_behind_a_slow_queue():
    lim = RateLimiter(10)
    try:
        assert lim.acquire(timeout=1)
        assert not lim.acquire(timeout=0.05)
        assert lim.pending == 0
    finally:
        lim.close()


def test_close_wakes_waiters_without_granting():
    lim = RateLimiter(10)
    assert lim.acquire(timeout=1)
    waiting = lim.enqueue()
    lim.close()
    assert not waiting.wait(1)
    assert not lim.enqueue().wait(0.01)


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        RateLimiter(-1)


def test_slow_down_only_raises_the_interval(limiter):
    assert not limiter.slow_down(INTERVAL / 2)
    assert limiter.interval_s == INTERVAL
    assert limiter.slow_down(0.08)

    first = limiter.enqueue()
    second = limiter.enqueue()
    assert first.wait(1) and second.wait(1)
    assert second.granted_at - first.granted_at >= 0.08 - 1e-9
