from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from .urls import is_same_site

_SKIP_PREFIXES = ("mailto:", "javascript:", "tel:", "data:")
_WS = re.compile(r"\s+")


@dataclass(frozen=True)
class Link:
    url: str
    text: str


def _attr_text(val: object) -> str:
    if isinstance(val, list):
        if not val:
            return ""
        return str(val[0])
    return str(val or "")


def extract_links(html: str, base_url: str) -> list[Link]:
    """Same-site ``<a href>`` links of a page, with their anchor text.

    Relative hrefs resolve against ``<base href>`` when present. Fragment-only
    hrefs are skipped. Each absolute URL is reported once, in page order.
    """

    soup = BeautifulSoup(html, "html.parser")

    effective_base = base_url
    base = soup.find("base")
    if base is not None:
        base_href = _attr_text(base.get("href")).strip()
        if base_href:
            effective_base = urljoin(base_url, base_href)

    out: list[Link] = []
    seen: set[str] = set()
    for a in soup.select("a[href]"):
        href = _attr_text(a.get("href")).strip()
        if not href or href.startswith("#"):
            continue
        if href.lower().startswith(_SKIP_PREFIXES):
            continue

        abs_url = urljoin(effective_base, href)
        if urlparse(abs_url).scheme not in {"http", "https"}:
            continue
        if not is_same_site(abs_url, base_url):
            continue

        # Same page, different fragment: one link.
        if urldefrag(abs_url)[0] == urldefrag(base_url)[0] and "#" in abs_url:
            continue
        if abs_url in seen:
            continue
        seen.add(abs_url)

        text = _WS.sub(" ", a.get_text(" ", strip=True)).strip()
        out.append(Link(url=abs_url, text=text))

    return out
