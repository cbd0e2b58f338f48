"""Operator-defined matching rules.

Two kinds of rules are supported:
- ``NameMatchRule`` pins an alias to an exact upstream name.
- ``CustomRule`` rewrites a name (regex, plain string, prefix or suffix),
  optionally gated by a condition. Custom rules apply in descending priority
  and stack: each rule sees the output of the previous one.

A rule only produces a match when its result exists upstream; otherwise the
analyzer falls through to the fuzzy matcher.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Literal, Optional

from pydantic import BaseModel, Field

from .matcher import MatchCandidate, STAGE_EXACT

LOGGER = logging.getLogger(__name__)

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}


class NameMatchRule(BaseModel):
    """Exact alias -> upstream name pin."""

    source: str
    target: str
    enabled: bool = True


class CustomRule(BaseModel):
    """Rewrite rule applied to a model name before looking it up upstream."""

    type: Literal["regex", "string", "prefix", "suffix"] = "string"
    pattern: str = ""
    replacement: str = ""
    flags: str = Field(default="", description="Regex flags such as 'i'; 'g' is accepted and ignored.")
    condition: Literal["all", "startswith", "endswith", "contains"] = "all"
    condition_value: str = ""
    priority: int = 0
    enabled: bool = True

    def applies_to(self, name: str) -> bool:
        value = self.condition_value
        if self.condition == "all" or not value:
            return True
        lowered = name.lower()
        needle = value.lower()
        if self.condition == "startswith":
            return lowered.startswith(needle)
        if self.condition == "endswith":
            return lowered.endswith(needle)
        return needle in lowered

    def _regex_flags(self) -> int:
        flags = 0
        for char in self.flags or "":
            flags |= _FLAG_MAP.get(char.lower(), 0)
        return flags

    def apply(self, name: str) -> str:
        """Return the rewritten name; invalid regexes leave the name unchanged."""
        if not self.enabled or not self.pattern or not self.applies_to(name):
            return name
        if self.type == "regex":
            try:
                count = 0 if "g" in (self.flags or "") else 1
                return re.sub(self.pattern, self.replacement, name, count=count, flags=self._regex_flags())
            except re.error as exc:
                LOGGER.warning("Skipping invalid regex rule %r: %s", self.pattern, exc)
                return name
        if self.type == "prefix":
            if name.startswith(self.pattern):
                return self.replacement + name[len(self.pattern):]
            return name
        if self.type == "suffix":
            if name.endswith(self.pattern):
                return name[: len(name) - len(self.pattern)] + self.replacement
            return name
        return name.replace(self.pattern, self.replacement)


class RuleSet(BaseModel):
    """All rules an operator configured for a job."""

    name_matches: list[NameMatchRule] = Field(default_factory=list)
    custom_rules: list[CustomRule] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(rule.enabled for rule in self.name_matches) and not any(
            rule.enabled for rule in self.custom_rules
        )

    def transform(self, name: str) -> str:
        result = name
        for rule in sorted(self.custom_rules, key=lambda item: -item.priority):
            result = rule.apply(result)
        return result

    def match(self, source: str, upstream: Iterable[str]) -> Optional[MatchCandidate]:
        """Return a 100-score match when a rule maps ``source`` onto an upstream name."""
        if not source:
            return None
        lookup = {name.strip().lower(): name.strip() for name in upstream if isinstance(name, str) and name.strip()}
        source_lower = source.strip().lower()

        for rule in self.name_matches:
            if not rule.enabled or rule.source.strip().lower() != source_lower:
                continue
            hit = lookup.get(rule.target.strip().lower())
            if hit is not None:
                return MatchCandidate(hit, 100, "rule-name-match", "high", STAGE_EXACT)
            LOGGER.debug("Name rule %s -> %s ignored: target not offered upstream", rule.source, rule.target)

        if not self.custom_rules:
            return None
        transformed = self.transform(source.strip())
        if transformed == source.strip():
            return None
        hit = lookup.get(transformed.strip().lower())
        if hit is None:
            return None
        return MatchCandidate(hit, 100, "rule-custom", "high", STAGE_EXACT)
