from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import InvalidRuleError
from .urls import link_path

ROOT = "root"
PAGE = "page"

RulePair = Sequence[str]


@dataclass(frozen=True)
class ClassificationRule:
    pattern: re.Pattern[str]
    label: str

    @classmethod
    def from_pair(cls, pair: RulePair) -> "ClassificationRule":
        if len(pair) != 2:
            raise InvalidRuleError(f"Rule must be (pattern, label), got {pair!r}")
        raw_pattern, label = pair
        if not label:
            raise InvalidRuleError(f"Rule {raw_pattern!r} has an empty label")
        try:
            pattern = re.compile(raw_pattern, re.IGNORECASE)
        except re.error as e:
            raise InvalidRuleError(f"Bad rule pattern {raw_pattern!r}: {e}") from e
        return cls(pattern=pattern, label=str(label))

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _first_match(rules: Iterable[ClassificationRule], text: str) -> str | None:
    for rule in rules:
        if rule.matches(text):
            return rule.label
    return None


@dataclass(frozen=True)
class LinkClassifier:
    """Decides whether a link is followed, and as what.

    Href rules are tried first, in order, against the link path; anchor
    rules only run when no href rule matched. First match wins. ``None``
    means do not follow.
    """

    href_rules: tuple[ClassificationRule, ...] = ()
    anchor_rules: tuple[ClassificationRule, ...] = ()

    @classmethod
    def from_pairs(
        cls,
        href_rules: Iterable[RulePair] = (),
        anchor_rules: Iterable[RulePair] = (),
    ) -> "LinkClassifier":
        return cls(
            href_rules=tuple(ClassificationRule.from_pair(p) for p in href_rules),
            anchor_rules=tuple(ClassificationRule.from_pair(p) for p in anchor_rules),
        )

    def classify(self, url: str, anchor_text: str) -> str | None:
        label = _first_match(self.href_rules, link_path(url))
        if label is not None:
            return label
        return _first_match(self.anchor_rules, anchor_text or "")


def default_rules() -> list[tuple[str, str]]:
    """Follow every same-site link as an ordinary page."""

    return [(".*", PAGE)]
