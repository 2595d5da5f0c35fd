from __future__ import annotations

import threading
import time
from unittest.mock import Mock

import pytest
import requests

from sitecrawl.errors import FetchError
from sitecrawl.fetcher import CrawlJob, FetcherState, PageFetcher, PageResult
from sitecrawl.http_client import HttpClient
from sitecrawl.links import Link
from sitecrawl.ratelimit import RateLimiter
from sitecrawl.timers import DelayQueue

from conftest import FakeHttp, page

URL = "https://example.com/"


@pytest.fixture
def crawler():
    c = Mock()
    c.request_permission.return_value = True
    return c


@pytest.fixture
def limiter():
    lim = RateLimiter(0)
    yield lim
    lim.close()


def _fetcher(crawler, http, limiter, **kwargs):
    kwargs.setdefault("timeout_s", 5)
    return PageFetcher(
        CrawlJob(URL, "root"), crawler=crawler, http=http, limiter=limiter, **kwargs
    )


def test_successful_fetch_reports_once_then_ends(crawler, limiter):
    http = FakeHttp({URL: page(("/a", "A"), ("https://other.com/", "X"))})
    fetcher = _fetcher(crawler, http, limiter)

    fetcher.run()

    crawler.on_page_result.assert_called_once()
    result = crawler.on_page_result.call_args.args[0]
    assert isinstance(result, PageResult)
    assert result.url == URL
    assert result.label == "root"
    assert result.links == (Link("https://example.com/a", "A"),)
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "reported")
    assert fetcher.state == FetcherState.TERMINATED


def test_denied_fetcher_does_no_work(crawler, limiter):
    crawler.request_permission.return_value = False
    http = FakeHttp({URL: page()})

    _fetcher(crawler, http, limiter).run()

    assert http.calls == []
    crawler.on_page_result.assert_not_called()
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "denied")


def test_bad_status_ends_without_result(crawler, limiter):
    http = FakeHttp({URL: (500, "oops")})
    _fetcher(crawler, http, limiter).run()
    crawler.on_page_result.assert_not_called()
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "http_error")


@pytest.mark.parametrize("error", [FetchError(URL), requests.Timeout("slow")])
def test_transport_failure_ends_without_result(crawler, limiter, error):
    http = FakeHttp({URL: error})
    _fetcher(crawler, http, limiter).run()
    crawler.on_page_result.assert_not_called()
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "transport_error")


def test_parse_failure_is_contained(crawler, limiter):
    def broken(html, base_url):
        raise ValueError("bad markup")

    http = FakeHttp({URL: page()})
    _fetcher(crawler, http, limiter, extract=broken).run()

    crawler.on_page_result.assert_not_called()
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "parse_error")


def test_safety_timer_ends_a_fetcher_stuck_behind_the_limiter(crawler):
    slow = RateLimiter(30)
    timers = DelayQueue()
    try:
        assert slow.acquire(timeout=1)  # next slot is 30s away
        fetcher = _fetcher(crawler, FakeHttp({URL: page()}), slow, timeout_s=0.05)
        fetcher.arm(timers)

        fetcher.run()

        assert fetcher.reason == "timeout"
        crawler.on_fetcher_terminated.assert_called_once_with(URL, "timeout")
        assert slow.pending == 0
    finally:
        slow.close()
        timers.close()


def test_late_response_after_timeout_is_discarded(crawler, limiter):
    http = FakeHttp({URL: page()}, delays={URL: 0.3})
    timers = DelayQueue()
    try:
        fetcher = _fetcher(crawler, http, limiter, timeout_s=0.05)
        fetcher.arm(timers)
        worker = threading.Thread(target=fetcher.run)
        worker.start()
        worker.join(2)

        crawler.on_page_result.assert_not_called()
        crawler.on_fetcher_terminated.assert_called_once_with(URL, "timeout")
    finally:
        timers.close()


def test_expired_before_start_never_asks_permission(crawler, limiter):
    fetcher = _fetcher(crawler, FakeHttp(), limiter)
    fetcher.expire()
    fetcher.run()

    crawler.request_permission.assert_not_called()
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "timeout")


def test_expire_during_reporting_is_ignored(limiter):
    holder = {}

    def on_page_result(result):
        holder["fetcher"].expire()

    crawler = Mock()
    crawler.request_permission.return_value = True
    crawler.on_page_result.side_effect = on_page_result
    fetcher = _fetcher(crawler, FakeHttp({URL: page()}), limiter)
    holder["fetcher"] = fetcher

    fetcher.run()

    crawler.on_fetcher_terminated.assert_called_once_with(URL, "reported")


def test_unexpected_error_still_terminates(crawler, limiter):
    crawler.on_page_result.side_effect = KeyError("boom")
    _fetcher(crawler, FakeHttp({URL: page()}), limiter).run()
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "error")


def test_every_retry_waits_for_its_own_send_slot(crawler):
    sent: list[float] = []

    def fake_get(url, **kwargs):
        sent.append(time.monotonic())
        resp = Mock()
        resp.status_code = 503 if len(sent) < 3 else 200
        resp.headers = {"Content-Type": "text/html"}
        resp.content = page().encode("utf-8")
        resp.url = url
        return resp

    session = Mock(spec=requests.Session)
    session.headers = {}
    session.get.side_effect = fake_get
    http = HttpClient(session, max_retries=2, backoff_base_s=0.0)
    slow = RateLimiter(0.05)
    try:
        _fetcher(crawler, http, slow).run()
    finally:
        slow.close()

    assert len(sent) == 3
    gaps = [b - a for a, b in zip(sent, sent[1:])]
    assert all(g >= 0.04 for g in gaps)
    crawler.on_fetcher_terminated.assert_called_once_with(URL, "reported")


def test_expire_waiting_on_the_lock_respects_reporting(crawler, limiter):
    fetcher = _fetcher(crawler, FakeHttp(), limiter)

    with fetcher._lock:
        timer = threading.Thread(target=fetcher.expire)
        timer.start()
        # The worker moves to reporting while the timer waits for the lock.
        fetcher.state = FetcherState.REPORTING
    timer.join(2)

    assert fetcher.state == FetcherState.REPORTING
    crawler.on_fetcher_terminated.assert_not_called()


def test_abort_reports_once_and_disarms_the_timer(crawler, limiter):
    timers = DelayQueue()
    try:
        fetcher = _fetcher(crawler, FakeHttp(), limiter, timeout_s=0.02)
        fetcher.arm(timers)

        assert fetcher.abort("dispatch_error")
        assert not fetcher.abort("dispatch_error")
        time.sleep(0.1)

        crawler.on_fetcher_terminated.assert_called_once_with(URL, "dispatch_error")
        assert len(timers) == 0
    finally:
        timers.close()
