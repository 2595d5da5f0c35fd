from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable
from urllib.parse import urlparse

import requests

from .errors import FetchError
from .urls import robots_url_for

if TYPE_CHECKING:
    from .http_client import HttpClient

logger = logging.getLogger(__name__)


def _compile_rule_path(value: str) -> re.Pattern[str]:
    anchored = value.endswith("$")
    if anchored:
        value = value[:-1]
    body = ".*".join(re.escape(part) for part in value.split("*"))
    return re.compile(body + ("$" if anchored else ""))


@dataclass(frozen=True)
class _Rule:
    allow: bool
    raw: str
    regex: re.Pattern[str]

    @property
    def specificity(self) -> int:
        return len(self.raw)


@dataclass
class _Group:
    agents: list[str] = field(default_factory=list)
    rules: list[_Rule] = field(default_factory=list)
    crawl_delay: float | None = None


def _agent_token(user_agent: str) -> str:
    return user_agent.split("/", 1)[0].strip().lower()


class RobotsRules:
    """Small robots.txt matcher.

    Supports User-agent groups, Allow/Disallow with ``*`` and ``$``
    wildcards, and Crawl-delay. The longest matching rule wins and Allow
    wins a tie. Rules for our own agent token take precedence over ``*``.
    """

    def __init__(
        self,
        rules: list[_Rule] | None = None,
        *,
        crawl_delay: float | None = None,
        allow_everything: bool = False,
        deny_everything: bool = False,
    ) -> None:
        self._rules = sorted(rules or [], key=lambda r: r.specificity, reverse=True)
        self.crawl_delay = crawl_delay
        self._allow_everything = allow_everything
        self._deny_everything = deny_everything

    @classmethod
    def allow_all(cls) -> "RobotsRules":
        return cls(allow_everything=True)

    @classmethod
    def deny_all(cls) -> "RobotsRules":
        return cls(deny_everything=True)

    @classmethod
    def parse(
        cls,
        base_url: str,
        raw: bytes | str,
        *,
        user_agent: str = "*",
    ) -> "RobotsRules":
        _ = base_url
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw

        groups: list[_Group] = []
        current: _Group | None = None
        collecting_agents = False

        for line in text.splitlines():
            if "#" in line:
                line = line.split("#", 1)[0]
            line = line.strip()
            if not line:
                continue

            key, _, value = line.partition(":")
            key = key.strip().lower()
            value = value.strip()

            if key == "user-agent":
                if current is None or not collecting_agents:
                    current = _Group()
                    groups.append(current)
                current.agents.append(value.lower())
                collecting_agents = True
                continue

            if current is None:
                continue
            collecting_agents = False

            if key in {"allow", "disallow"}:
                # "Disallow:" with no value allows everything.
                if not value:
                    continue
                current.rules.append(
                    _Rule(
                        allow=key == "allow",
                        raw=value,
                        regex=_compile_rule_path(value),
                    )
                )
            elif key == "crawl-delay":
                try:
                    current.crawl_delay = float(value)
                except ValueError:
                    continue

        token = _agent_token(user_agent)
        chosen = [
            g
            for g in groups
            if token and token != "*" and any(a != "*" and token.startswith(a) for a in g.agents)
        ]
        if not chosen:
            chosen = [g for g in groups if "*" in g.agents]

        rules: list[_Rule] = []
        crawl_delay: float | None = None
        for group in chosen:
            rules.extend(group.rules)
            if group.crawl_delay is not None:
                crawl_delay = group.crawl_delay
        return cls(rules, crawl_delay=crawl_delay)

    def is_allowed(self, url: str) -> bool:
        if self._deny_everything:
            return False
        if self._allow_everything:
            return True

        parsed = urlparse(url)
        path = parsed.path or "/"
        if path == "/robots.txt":
            return True
        if parsed.query:
            path = f"{path}?{parsed.query}"

        best: _Rule | None = None
        for rule in self._rules:
            if best is not None and rule.specificity < best.specificity:
                break
            if rule.regex.match(path):
                if best is None or (rule.allow and not best.allow):
                    best = rule
        return best is None or best.allow


def fetch_robots(
    http: "HttpClient",
    root_url: str,
    *,
    user_agent: str = "*",
    gate: Callable[[], bool] | None = None,
) -> RobotsRules:
    """Fetch and parse robots.txt for the site of ``root_url``.

    A missing file (4xx other than 401/403) allows everything. Anything
    else that prevents reading the rules denies everything.
    """

    robots_url = robots_url_for(root_url)
    try:
        res = http.get(robots_url, gate=gate)
    except (FetchError, requests.RequestException) as e:
        logger.warning("robots.txt fetch failed for %s, denying site: %s", robots_url, e)
        return RobotsRules.deny_all()

    if res.status_code in {401, 403}:
        logger.warning(
            "robots.txt at %s returned %s, denying site", robots_url, res.status_code
        )
        return RobotsRules.deny_all()
    if 400 <= res.status_code < 500:
        logger.info("No robots.txt at %s (%s), allowing site", robots_url, res.status_code)
        return RobotsRules.allow_all()
    if not res.ok:
        logger.warning(
            "robots.txt at %s returned %s, denying site", robots_url, res.status_code
        )
        return RobotsRules.deny_all()

    try:
        rules = RobotsRules.parse(root_url, res.body, user_agent=user_agent)
    except re.error as e:
        logger.warning("Unreadable robots.txt at %s, denying site: %s", robots_url, e)
        return RobotsRules.deny_all()
    logger.info("Loaded robots.txt from %s", robots_url)
    return rules
