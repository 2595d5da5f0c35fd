from __future__ import annotations

import threading
import time

import pytest

from sitecrawl.crawl import CrawlConfig, SiteCrawler
from sitecrawl.classify import ROOT
from sitecrawl.errors import FetchError
from sitecrawl.http_client import FetchResult


class FakeHttp:
    """Stands in for HttpClient: serves canned pages, records every GET."""

    def __init__(self, pages=None, *, delays=None):
        self.pages = dict(pages or {})
        self.delays = dict(delays or {})
        self.calls: list[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def get(self, url, *, headers=None, gate=None):
        if gate is not None and not gate():
            raise FetchError(url)
        with self._lock:
            self.calls.append(url)
        delay = self.delays.get(url)
        if delay:
            time.sleep(delay)

        entry = self.pages.get(url)
        if isinstance(entry, Exception):
            raise entry
        if entry is None:
            status, body = 404, "not found"
        elif isinstance(entry, tuple):
            status, body = entry
        else:
            status, body = 200, entry
        return FetchResult(
            url=url,
            final_url=url,
            status_code=status,
            headers={"Content-Type": "text/html; charset=utf-8"},
            fetched_at=time.time(),
            body=body.encode("utf-8"),
        )

    def count(self, url):
        with self._lock:
            return self.calls.count(url)

    def close(self):
        self.closed = True


def page(*links):
    """Tiny HTML page with one <a> per (href, text) pair."""

    anchors = "\n".join(f'<a href="{href}">{text}</a>' for href, text in links)
    return f"<html><head><title>t</title></head><body>{anchors}</body></html>"


@pytest.fixture
def fast_config():
    return CrawlConfig(
        rate_limit_ms=2,
        dispatch_delay_ms=2,
        fetcher_timeout_ms=5_000,
        max_workers=4,
    )


@pytest.fixture
def run_crawl(fast_config):
    def _run(http, root, href_rules=None, anchor_rules=(), config=None):
        crawler = SiteCrawler(http, href_rules, anchor_rules, config=config or fast_config)
        crawler.submit(root, ROOT)
        assert crawler.wait(15), "crawl did not drain"
        docs = list(crawler.pages())
        return crawler, docs

    return _run
