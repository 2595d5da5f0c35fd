from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from .crawl import PageDocument
from .urls import page_filename

logger = logging.getLogger(__name__)


def utc_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def extract_title(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    if soup.title and soup.title.get_text(strip=True):
        return soup.title.get_text(" ", strip=True)
    h1 = soup.find("h1")
    if h1 and h1.get_text(strip=True):
        return h1.get_text(" ", strip=True)
    return "Untitled"


def html_to_markdown(html: str, *, source_url: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    main = soup.select_one("main") or soup.select_one("article") or soup.body or soup
    markdown = md(str(main), heading_style="ATX").strip() + "\n"
    return f"Source: {source_url}\n\n" + markdown


@dataclass
class PageExporter:
    """Writes crawled pages into a flat directory with a JSONL manifest.

    Layout under ``out_dir``::

        pages/<name>.html
        pages/<name>.md      (unless write_markdown is off)
        manifest.jsonl       one event per write/delete
        manifest.json        summary, written once at the end
    """

    out_dir: Path
    write_markdown: bool = True
    written: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.pages_dir = self.out_dir / "pages"
        self.pages_dir.mkdir(parents=True, exist_ok=True)
        self.jsonl_path = self.out_dir / "manifest.jsonl"
        self.json_path = self.out_dir / "manifest.json"

    def _paths_for(self, url: str) -> dict[str, Path]:
        stem = page_filename(url)
        return {
            "html": self.pages_dir / f"{stem}.html",
            "md": self.pages_dir / f"{stem}.md",
        }

    def _rel(self, path: Path) -> str:
        return path.relative_to(self.out_dir).as_posix()

    def append_event(self, event: dict[str, Any]) -> None:
        event = dict(event)
        event.setdefault("at", utc_iso())
        with self.jsonl_path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")

    def write(self, doc: PageDocument) -> dict[str, Any]:
        paths = self._paths_for(doc.url)
        paths["html"].write_text(doc.html, encoding="utf-8", newline="\n")
        rel_paths = {"html": self._rel(paths["html"])}

        if self.write_markdown:
            paths["md"].write_text(
                html_to_markdown(doc.html, source_url=doc.url),
                encoding="utf-8",
                newline="\n",
            )
            rel_paths["md"] = self._rel(paths["md"])

        event = {
            "kind": "page",
            "url": doc.url,
            "label": doc.label,
            "title": extract_title(doc.html),
            "paths": rel_paths,
        }
        self.append_event(event)
        self.written += 1
        logger.debug("Exported %s to %s", doc.url, rel_paths["html"])
        return event

    def delete(self, url: str) -> list[str]:
        removed: list[str] = []
        for path in self._paths_for(url).values():
            if path.exists():
                path.unlink()
                removed.append(self._rel(path))
        self.append_event({"kind": "deleted", "url": url, "paths": removed})
        return removed

    def write_summary(self, summary: dict[str, Any]) -> None:
        self.json_path.write_text(
            json.dumps(summary, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
