from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

import requests

from .errors import FetchError
from .links import Link, extract_links

if TYPE_CHECKING:
    from .crawl import SiteCrawler
    from .http_client import HttpClient
    from .ratelimit import RateLimiter, Ticket
    from .timers import DelayQueue, TimerHandle

logger = logging.getLogger(__name__)

LinkExtractor = Callable[[str, str], "list[Link]"]


class FetcherState(str, Enum):
    REQUESTING = "requesting"
    AWAITING_RATE_SLOT = "awaiting_rate_slot"
    AWAITING_RESPONSE = "awaiting_response"
    PARSING = "parsing"
    REPORTING = "reporting"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class CrawlJob:
    url: str
    label: str


@dataclass(frozen=True)
class PageResult:
    url: str
    label: str
    body: str
    links: tuple[Link, ...]


class PageFetcher:
    """Fetches and parses one page, reports once, then ends.

    ``run`` walks the states on a worker thread. ``expire`` is called by the
    safety timer; whichever of the two ends the fetcher first reports the
    termination, the other becomes a no-op.
    """

    def __init__(
        self,
        job: CrawlJob,
        *,
        crawler: "SiteCrawler",
        http: "HttpClient",
        limiter: "RateLimiter",
        timeout_s: float,
        headers: dict[str, str] | None = None,
        extract: LinkExtractor = extract_links,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job = job
        self._crawler = crawler
        self._http = http
        self._limiter = limiter
        self._headers = headers or None
        self._extract = extract
        self._clock = clock
        self._deadline = clock() + timeout_s

        self._lock = threading.Lock()
        self.state = FetcherState.REQUESTING
        self.reason: str | None = None
        self._ticket: "Ticket | None" = None
        self._timer: "TimerHandle | None" = None

    @property
    def url(self) -> str:
        return self.job.url

    @property
    def terminated(self) -> bool:
        return self.state == FetcherState.TERMINATED

    def arm(self, timers: "DelayQueue") -> None:
        self._timer = timers.call_later(self._remaining(), self.expire)

    def _remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def _enter(self, state: FetcherState) -> bool:
        with self._lock:
            if self.state == FetcherState.TERMINATED:
                return False
            self.state = state
            return True

    def _terminate(self, reason: str, *, unless: FetcherState | None = None) -> bool:
        with self._lock:
            if self.state == FetcherState.TERMINATED or self.state == unless:
                return False
            self.state = FetcherState.TERMINATED
            self.reason = reason
            ticket = self._ticket

        if self._timer is not None:
            self._timer.cancel()
        if ticket is not None:
            self._limiter.cancel(ticket)
        self._crawler.on_fetcher_terminated(self.url, reason)
        return True

    def abort(self, reason: str) -> bool:
        """End the fetcher from outside its worker, reporting at most once."""

        return self._terminate(reason)

    def expire(self) -> None:
        # Reporting hands links to the crawler; let it finish.
        if self._terminate("timeout", unless=FetcherState.REPORTING):
            logger.warning("Gave up on %s after safety timeout", self.url)

    def run(self) -> None:
        if self.terminated:
            return
        try:
            self._run()
        except Exception:
            logger.exception("Fetcher for %s crashed", self.url)
            self._terminate("error")

    def _take_slot(self) -> bool:
        """Wait for a send slot before each HTTP attempt, retries included."""

        if not self._enter(FetcherState.AWAITING_RATE_SLOT):
            return False
        ticket = self._limiter.enqueue()
        with self._lock:
            self._ticket = ticket
        # A failed cancel means the slot was granted as we gave up; use it.
        if not ticket.wait(self._remaining()) and self._limiter.cancel(ticket):
            self._terminate("timeout")
            return False
        return self._enter(FetcherState.AWAITING_RESPONSE)

    def _run(self) -> None:
        if not self._crawler.request_permission(self.url):
            self._terminate("denied")
            return

        try:
            res = self._http.get(self.url, headers=self._headers, gate=self._take_slot)
        except (FetchError, requests.RequestException) as e:
            if self.terminated:
                return
            logger.error("No response from %s: %s", self.url, e)
            self._terminate("transport_error")
            return

        if not res.ok:
            if self._terminate("http_error"):
                logger.warning("Request to %s failed with status %s", self.url, res.status_code)
            return

        if not self._enter(FetcherState.PARSING):
            return
        try:
            html = res.text()
            links = tuple(self._extract(html, res.final_url or self.url))
        except Exception:
            logger.error("Could not parse %s", self.url, exc_info=True)
            self._terminate("parse_error")
            return

        if not self._enter(FetcherState.REPORTING):
            return
        self._crawler.on_page_result(
            PageResult(url=self.url, label=self.job.label, body=html, links=links)
        )
        self._terminate("reported")
