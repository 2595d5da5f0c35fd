"""sitecrawl core library.

A recursive, rate-limited, robots.txt-aware crawler for a single site.

Entry points:
- ``start_crawl`` streams ``PageDocument`` objects for one root URL.
- ``SiteCrawler`` is the coordinator behind it, for callers that want to
  drive submissions or inspect the visited table themselves.
"""

from __future__ import annotations

__all__ = [
    "__version__",
    "CrawlConfig",
    "CrawlError",
    "PageDocument",
    "SiteCrawler",
    "normalize_url",
    "start_crawl",
]

__version__ = "0.1.0"

from .crawl import CrawlConfig, PageDocument, SiteCrawler, start_crawl  # noqa: E402
from .errors import CrawlError  # noqa: E402
from .urls import normalize_url  # noqa: E402
