from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import requests
from tqdm import tqdm

from .classify import ROOT, default_rules
from .crawl import CrawlConfig, SiteCrawler
from .errors import InvalidRuleError
from .export import PageExporter, utc_iso
from .http_client import HttpClient


def _rule_arg(text: str) -> tuple[str, str]:
    pattern, sep, label = text.rpartition("=")
    if not sep or not pattern or not label:
        raise argparse.ArgumentTypeError(
            f"expected PATTERN=LABEL, got {text!r}"
        )
    return pattern, label


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitecrawl")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd", required=True)

    crawl_p = sub.add_parser("crawl", help="Crawl one site from its root URL")
    crawl_p.add_argument("root_url")
    crawl_p.add_argument(
        "--href-rule",
        type=_rule_arg,
        action="append",
        default=None,
        help=(
            "Repeatable, tried in order against the link path; "
            "e.g. --href-rule '/blog/.*=page'. Default: '.*=page'"
        ),
    )
    crawl_p.add_argument(
        "--anchor-rule",
        type=_rule_arg,
        action="append",
        default=[],
        help="Repeatable, tried against anchor text when no href rule matched",
    )
    crawl_p.add_argument("--rate-limit-ms", type=int, default=1000)
    crawl_p.add_argument("--dispatch-delay-ms", type=int, default=500)
    crawl_p.add_argument("--fetcher-timeout-ms", type=int, default=600_000)
    crawl_p.add_argument("--max-workers", type=int, default=8)
    crawl_p.add_argument("--max-pages", type=int, default=None)
    crawl_p.add_argument("--timeout", type=float, default=45)
    crawl_p.add_argument("--no-robots", action="store_true")
    crawl_p.add_argument("--user-agent", default=None)
    crawl_p.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Export pages + manifest here instead of listing them on stdout",
    )
    crawl_p.add_argument("--no-markdown", action="store_true")
    return parser


def _run_crawl(args: argparse.Namespace) -> int:
    cfg_kwargs = {}
    if args.user_agent:
        cfg_kwargs["user_agent"] = args.user_agent
    try:
        cfg = CrawlConfig(
            rate_limit_ms=int(args.rate_limit_ms),
            dispatch_delay_ms=int(args.dispatch_delay_ms),
            fetcher_timeout_ms=int(args.fetcher_timeout_ms),
            max_workers=int(args.max_workers),
            max_pages=args.max_pages,
            respect_robots=not bool(args.no_robots),
            request_timeout_s=float(args.timeout),
            **cfg_kwargs,
        )
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    exporter = None
    if args.out is not None:
        try:
            exporter = PageExporter(args.out, write_markdown=not bool(args.no_markdown))
        except OSError as e:
            print(str(e), file=sys.stderr)
            return 2

    http = HttpClient(
        requests.Session(),
        timeout_s=cfg.request_timeout_s,
        max_retries=cfg.max_retries,
        backoff_base_s=cfg.backoff_base_s,
        user_agent=cfg.user_agent,
    )
    try:
        crawler = SiteCrawler(
            http,
            args.href_rule if args.href_rule is not None else default_rules(),
            args.anchor_rule,
            config=cfg,
        )
    except InvalidRuleError as e:
        print(str(e), file=sys.stderr)
        http.close()
        return 2

    started_at = utc_iso()
    crawler.submit(args.root_url, ROOT)
    try:
        with tqdm(desc="pages", unit="page", file=sys.stderr) as progress:
            for doc in crawler.pages():
                if exporter is not None:
                    exporter.write(doc)
                else:
                    print(f"{doc.label}\t{doc.url}")
                progress.update(1)
    except OSError as e:
        print(str(e), file=sys.stderr)
        crawler.stop()
        return 2
    finally:
        http.close()

    if exporter is not None:
        exporter.write_summary(
            {
                "root_url": args.root_url,
                "started_at": started_at,
                "finished_at": utc_iso(),
                "config": {
                    "rate_limit_ms": cfg.rate_limit_ms,
                    "dispatch_delay_ms": cfg.dispatch_delay_ms,
                    "fetcher_timeout_ms": cfg.fetcher_timeout_ms,
                    "max_workers": cfg.max_workers,
                    "max_pages": cfg.max_pages,
                    "respect_robots": cfg.respect_robots,
                    "user_agent": cfg.user_agent,
                },
                "stats": dict(crawler.stats),
                "visited": sorted(crawler.visited),
            }
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.cmd == "crawl":
        return _run_crawl(args)

    return 2
