from __future__ import annotations

import logging
import queue
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, cast

import requests

from . import __version__
from .classify import ROOT, LinkClassifier, RulePair, default_rules
from .errors import CrawlClosedError, FetchError
from .fetcher import CrawlJob, LinkExtractor, PageFetcher, PageResult
from .http_client import HttpClient
from .links import extract_links
from .ratelimit import RateLimiter
from .robots import RobotsRules, fetch_robots
from .timers import DelayQueue
from .urls import normalize_url, site_host

logger = logging.getLogger(__name__)

_END_OF_CRAWL = object()


@dataclass
class CrawlConfig:
    rate_limit_ms: int = 1000
    dispatch_delay_ms: int = 500
    fetcher_timeout_ms: int = 600_000
    max_workers: int = 8
    respect_robots: bool = True
    user_agent: str = f"sitecrawl/{__version__}"
    request_timeout_s: float = 45
    max_retries: int = 2
    backoff_base_s: float = 1.0
    max_pages: int | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("rate_limit_ms", "dispatch_delay_ms", "fetcher_timeout_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.max_pages is not None and self.max_pages < 1:
            raise ValueError("max_pages must be >= 1 when set")

    @property
    def rate_limit_s(self) -> float:
        return self.rate_limit_ms / 1000

    @property
    def dispatch_delay_s(self) -> float:
        return self.dispatch_delay_ms / 1000

    @property
    def fetcher_timeout_s(self) -> float:
        return self.fetcher_timeout_ms / 1000


@dataclass
class PageRecord:
    started: bool = True


@dataclass(frozen=True)
class PageDocument:
    url: str
    html: str
    label: str


RobotsFetcher = Callable[..., RobotsRules]


class SiteCrawler:
    """Coordinates one site crawl.

    Owns the visited table, the robots policies and the in-flight count.
    Fetchers run on a thread pool and call back into ``request_permission``,
    ``on_page_result`` and ``on_fetcher_terminated``; all shared state is
    touched under one lock. The crawl finishes when the in-flight count
    drops back to zero, after which ``pages()`` stops yielding.
    """

    def __init__(
        self,
        http: HttpClient,
        href_rules: Iterable[RulePair] | None = None,
        anchor_rules: Iterable[RulePair] = (),
        *,
        config: CrawlConfig | None = None,
        extract: LinkExtractor = extract_links,
        robots_fetcher: RobotsFetcher = fetch_robots,
    ) -> None:
        self.http = http
        self.cfg = config or CrawlConfig()
        self.classifier = LinkClassifier.from_pairs(
            default_rules() if href_rules is None else href_rules,
            anchor_rules,
        )
        self._extract = extract
        self._robots_fetcher = robots_fetcher

        self._lock = threading.Lock()
        self._robots_lock = threading.Lock()
        self._pages: dict[str, PageRecord] = {}
        self._robots: dict[str, RobotsRules] = {}
        self._in_flight = 0
        self._started = False
        self._finished = threading.Event()
        self._stats: Counter[str] = Counter()
        self._docs: queue.Queue[object] = queue.Queue()
        self.base_url: str | None = None

        self.limiter = RateLimiter(self.cfg.rate_limit_s)
        self.timers = DelayQueue()
        self._pool = ThreadPoolExecutor(
            max_workers=self.cfg.max_workers,
            thread_name_prefix="sitecrawl-fetch",
        )

    # -- caller side -----------------------------------------------------

    def submit(self, url: str, label: str = ROOT) -> None:
        with self._lock:
            if self._finished.is_set():
                raise CrawlClosedError(f"Crawl of {self.base_url} has finished")
            self._in_flight += 1
            self._started = True
        self._dispatch(CrawlJob(url=url, label=label))

    def pages(self) -> Iterator[PageDocument]:
        while True:
            item = self._docs.get()
            if item is _END_OF_CRAWL:
                # Leave the marker for any other reader.
                self._docs.put(_END_OF_CRAWL)
                return
            yield cast(PageDocument, item)

    def wait(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)

    def stop(self) -> None:
        """Abandon the crawl.

        Queued and delayed work is dropped and ``pages()`` ends. Requests
        already on the wire finish on their own but are not followed up.
        """

        with self._lock:
            if self._finished.is_set():
                return
            self._finished.set()
        logger.info("Stopping crawl of %s", self.base_url)
        self._close()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def visited(self) -> dict[str, PageRecord]:
        with self._lock:
            return dict(self._pages)

    @property
    def stats(self) -> Counter[str]:
        with self._lock:
            return Counter(self._stats)

    # -- fetcher side ----------------------------------------------------

    def request_permission(self, url: str) -> bool:
        key = normalize_url(url)
        host = site_host(url)
        with self._lock:
            if key in self._pages:
                reason = "denied_seen"
            elif self.cfg.respect_robots and not self._robots_allow(host, url):
                reason = "denied_robots"
            elif (
                self.cfg.max_pages is not None
                and self._stats["granted"] >= self.cfg.max_pages
            ):
                reason = "denied_limit"
            else:
                self._pages[key] = PageRecord(started=True)
                reason = "granted"
            self._stats[reason] += 1

        logger.debug("%s: %s", reason, url)
        return reason == "granted"

    def _robots_allow(self, host: str, url: str) -> bool:
        rules = self._robots.get(host)
        return rules is not None and rules.is_allowed(url)

    def on_page_result(self, result: PageResult) -> None:
        if result.body:
            self._docs.put(PageDocument(url=result.url, html=result.body, label=result.label))
            with self._lock:
                self._stats["fetched"] += 1
        else:
            logger.warning("No content in %s", result.url)

        scheduled_here: set[str] = set()
        for link in result.links:
            if link.url == "#":
                continue
            try:
                key = normalize_url(link.url)
                label = self.classifier.classify(key, link.text)
            except (AttributeError, TypeError, ValueError):
                logger.error("Could not classify link %r on %s", link, result.url, exc_info=True)
                with self._lock:
                    self._stats["classify_error"] += 1
                continue
            if label is None or key in scheduled_here:
                continue
            scheduled_here.add(key)

            with self._lock:
                if self._finished.is_set() or key in self._pages:
                    continue
                self._in_flight += 1
                self._started = True
                self._stats["scheduled"] += 1
            self.timers.call_later(
                self.cfg.dispatch_delay_s,
                self._dispatch,
                CrawlJob(url=link.url, label=label),
            )

    def on_fetcher_terminated(self, url: str, reason: str) -> None:
        with self._lock:
            self._in_flight -= 1
            self._stats[reason] += 1
            drained = (
                self._started
                and self._in_flight == 0
                and not self._finished.is_set()
            )
            if drained:
                self._finished.set()
        logger.debug("Fetcher for %s ended (%s)", url, reason)
        if drained:
            self._close()

    # -- internals -------------------------------------------------------

    def _dispatch(self, job: CrawlJob) -> None:
        fetcher = PageFetcher(
            job,
            crawler=self,
            http=self.http,
            limiter=self.limiter,
            timeout_s=self.cfg.fetcher_timeout_s,
            headers=dict(self.cfg.headers),
            extract=self._extract,
        )
        fetcher.arm(self.timers)
        try:
            self._pool.submit(self._run_job, fetcher)
        except RuntimeError:
            logger.error("Could not dispatch %s", job.url, exc_info=True)
            fetcher.abort("dispatch_error")

    def _run_job(self, fetcher: PageFetcher) -> None:
        if fetcher.job.label == ROOT:
            self._prepare_root(fetcher.job.url)
        fetcher.run()

    def _prepare_root(self, url: str) -> None:
        logger.info("Starting crawl of %s", url)
        with self._lock:
            self.base_url = url
        if not self.cfg.respect_robots:
            return

        host = site_host(url)
        # Held across the fetch so each host's robots.txt is read once.
        with self._robots_lock:
            with self._lock:
                if host in self._robots:
                    return
            try:
                rules = self._robots_fetcher(
                    self.http,
                    url,
                    user_agent=self.cfg.user_agent,
                    gate=self._robots_slot,
                )
            except (FetchError, requests.RequestException, OSError) as e:
                logger.warning("Could not load robots.txt for %s, denying site: %s", host, e)
                rules = RobotsRules.deny_all()
            with self._lock:
                self._robots[host] = rules
        if rules.crawl_delay:
            self.limiter.slow_down(rules.crawl_delay)

    def _robots_slot(self) -> bool:
        return self.limiter.acquire(self.cfg.fetcher_timeout_s)

    def _close(self) -> None:
        with self._lock:
            pages = len(self._pages)
        logger.info("Finished crawling site %s (%d pages claimed)", self.base_url, pages)
        self.limiter.close()
        self.timers.close()
        self._pool.shutdown(wait=False, cancel_futures=True)
        self._docs.put(_END_OF_CRAWL)


def start_crawl(
    root_url: str,
    href_rules: Iterable[RulePair] | None = None,
    anchor_rules: Iterable[RulePair] = (),
    *,
    config: CrawlConfig | None = None,
    http: HttpClient | None = None,
) -> Iterator[PageDocument]:
    """Crawl the site at ``root_url`` and yield pages as they arrive."""

    cfg = config or CrawlConfig()
    owns_http = http is None
    if http is None:
        http = HttpClient(
            requests.Session(),
            timeout_s=cfg.request_timeout_s,
            max_retries=cfg.max_retries,
            backoff_base_s=cfg.backoff_base_s,
            user_agent=cfg.user_agent,
        )

    crawler = SiteCrawler(http, href_rules, anchor_rules, config=cfg)
    crawler.submit(root_url, ROOT)
    try:
        yield from crawler.pages()
    finally:
        if owns_http:
            http.close()
