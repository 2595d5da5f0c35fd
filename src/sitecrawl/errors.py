from __future__ import annotations


class CrawlError(Exception):
    """Base class for errors raised by sitecrawl."""


class FetchError(CrawlError):
    """A GET could not produce a response after all retries."""

    def __init__(self, url: str, cause: Exception | None = None) -> None:
        super().__init__(f"Failed to fetch {url}: {cause}")
        self.url = url
        self.cause = cause


class InvalidRuleError(CrawlError, ValueError):
    """A classification rule pattern does not compile."""


class CrawlClosedError(CrawlError, RuntimeError):
    """Work was submitted to a crawl that has already drained."""
