from __future__ import annotations

import re
from urllib.parse import unquote, urlparse


def _normalize_once(url: str) -> str:
    url = url.lower()
    if url.startswith("http://"):
        url = "https://" + url[len("http://") :]
    url = url.replace("https://www.", "https://")

    fragment_at = url.find("#")
    if fragment_at >= 0:
        url = url[:fragment_at]

    # Trailing slash goes on before the bare "www." strip; keys depend on it.
    if not url.endswith("/"):
        url += "/"
    if url.startswith("www."):
        url = url[len("www.") :]
    return url


def normalize_url(raw_url: str) -> str:
    """Map a discovered URL to its crawl key.

    - Lowercases the whole string.
    - Forces https and drops a leading ``www.``.
    - Strips the fragment and guarantees a trailing ``/``.

    The steps run in a fixed order and are repeated until the key is stable,
    so ``normalize_url(normalize_url(u)) == normalize_url(u)`` holds even
    for oddities like ``www.www.example.com``.
    """

    key = _normalize_once(raw_url)
    while True:
        again = _normalize_once(key)
        if again == key:
            return key
        key = again


def site_host(url: str) -> str:
    """Host used to decide "same site": lowercased, leading ``www.`` removed."""

    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[len("www.") :]
    return host


def is_same_site(url: str, other: str) -> bool:
    host = site_host(url)
    return bool(host) and host == site_host(other)


def link_path(url: str) -> str:
    """Path component for absolute http(s) links, else the raw string."""

    if url.startswith("http"):
        try:
            return urlparse(url).path
        except ValueError:
            return url
    return url


def robots_url_for(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/robots.txt"


def safe_filename_piece(text: str, *, max_len: int = 150) -> str:
    text = text.strip()
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^A-Za-z0-9._-]+", "-", text)
    text = re.sub(r"-+", "-", text).strip("-")
    if not text:
        return "untitled"
    return text[:max_len]


def page_filename(url: str) -> str:
    """Flat file stem for a page: its path with ``/`` turned into ``-``.

    ``https://example.com/docs/intro/`` becomes ``docs-intro``; the site
    root becomes ``index``. Query strings are folded in so that
    ``/list?page=2`` and ``/list`` do not collide.
    """

    parsed = urlparse(url)
    path = unquote(parsed.path or "/").strip("/")
    stem = path.replace("/", "-")
    if parsed.query:
        stem = f"{stem}-{parsed.query}" if stem else parsed.query
    if not stem:
        return "index"
    return safe_filename_piece(stem)
