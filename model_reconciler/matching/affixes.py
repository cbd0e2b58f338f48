"""Provider affix detection and core-name extraction.

Providers that resell models often decorate upstream names: ``[vendor]gpt-4o``,
``gpt-4o-官方``, ``claude-3-opus@az``. The helpers here recognize those
decorations so the matcher can treat them as the same model.
"""

from __future__ import annotations

import re

# -----------------------------------------------------------------------------
# Patterns
# -----------------------------------------------------------------------------

_CJK = "一-龥"

_CORE_PREFIX_RES = (
    re.compile(r"^\[.+?\]"),
    re.compile(r"^【.+?】"),
    re.compile(r"^\(.+?\)"),
    re.compile(r"^（.+?）"),
    re.compile(r"^@[A-Za-z0-9_-]+/"),
)
_CORE_VERSION_RES = (
    re.compile(r"[-_]v\d+(?:\.\d+)*$", re.IGNORECASE),
    re.compile(r"[-_]\d+\.\d+(?:\.\d+)*$"),
)
_CORE_DATE_RES = (re.compile(r"[-_]\d{8,}$"),)
_CORE_TIER_RES = (re.compile(r"[-_](?:mini|nano|lite|small|large|xl|xxl|turbo|plus)$", re.IGNORECASE),)
_CORE_CJK_RES = (re.compile(rf"[-_@#][{_CJK}]+$"),)
_CORE_STATUS_RES = (
    re.compile(r"[-_](?:official|test|beta|alpha|preview|dev|prod|stable)$", re.IGNORECASE),
)

# Affix classes in the order a single pass removes them.
_CORE_STEPS = (
    _CORE_PREFIX_RES,
    _CORE_VERSION_RES,
    _CORE_DATE_RES,
    _CORE_TIER_RES,
    _CORE_CJK_RES,
    _CORE_STATUS_RES,
)
_PROVIDER_ONLY_STEPS = (_CORE_PREFIX_RES, _CORE_CJK_RES, _CORE_STATUS_RES)

_PROVIDER_PREFIX_RES = (
    re.compile(r"^\[[^\]]+\]"),
    re.compile(r"^【[^】]+】"),
    re.compile(r"^\([^)]+\)"),
    re.compile(r"^（[^）]+）"),
    re.compile(r"^<[^>]+>"),
    re.compile(r"^「[^」]+」"),
    re.compile(r"^『[^』]+』"),
    re.compile(r"^@[A-Za-z0-9_-]+/"),
)

_PROVIDER_SUFFIX_RES = (
    re.compile(rf"-[{_CJK}]+$"),
    re.compile(rf"_[{_CJK}]+$"),
    re.compile(rf"@[{_CJK}]+$"),
    re.compile(rf"#[{_CJK}]+$"),
    re.compile(r"-[A-Za-z]+$"),
    re.compile(r"_[A-Za-z]+$"),
    re.compile(r"@[A-Za-z]+$"),
    re.compile(r"/[A-Za-z0-9_-]+$"),
    re.compile(r"\[[^\]]+\]$"),
    re.compile(r"【[^】]+】$"),
    re.compile(r"\([^)]+\)$"),
    re.compile(r"（[^）]+）$"),
    re.compile(r"-v\d+(?:\.\d+)*$", re.IGNORECASE),
    re.compile(r"_v\d+(?:\.\d+)*$", re.IGNORECASE),
    re.compile(r"-\d{8,}$"),
    re.compile(r"_\d{8,}$"),
)
_SUFFIX_SEPARATORS = ("-", "_", "@", "#", "/", "[", "(", "【", "（")


# -----------------------------------------------------------------------------
# Core name
# -----------------------------------------------------------------------------

def _strip_once(text: str, patterns: tuple[re.Pattern[str], ...]) -> str:
    for pattern in patterns:
        stripped = pattern.sub("", text, count=1).strip()
        if stripped != text and stripped:
            return stripped
    return text


def _run_to_fixed_point(name: str, steps) -> str:
    text = (name or "").strip()
    # Every change shortens the text, so len(text) passes always suffice.
    for _ in range(len(text) + 1):
        before = text
        for patterns in steps:
            text = _strip_once(text, patterns)
        if text == before:
            break
    return text


def extract_core_name(name: str) -> str:
    """Strip provider prefixes, versions, dates, tiers, CJK and status suffixes.

    Each pass removes at most one affix of each class; passes repeat until
    nothing changes, so the result is idempotent. A step that would empty the
    name is skipped, and an empty input is returned unchanged.
    """
    core = _run_to_fixed_point(name, _CORE_STEPS)
    return core or (name or "")


def strip_provider_affixes(name: str) -> str:
    """Like ``extract_core_name`` but only removes reseller decorations (brackets, CJK and status tags)."""
    stripped = _run_to_fixed_point(name, _PROVIDER_ONLY_STEPS)
    return stripped or (name or "")


# -----------------------------------------------------------------------------
# Provider affix checks
# -----------------------------------------------------------------------------

def _strip_all(text: str, patterns: tuple[re.Pattern[str], ...]) -> tuple[str, bool]:
    found = False
    changed = True
    while changed and text:
        changed = False
        for pattern in patterns:
            stripped = pattern.sub("", text, count=1).strip()
            if stripped != text and stripped:
                text = stripped
                found = True
                changed = True
                break
    return text, found


def is_provider_prefixed(candidate: str, original: str) -> bool:
    """True when ``candidate`` is ``original`` behind one or more provider prefixes."""
    if not candidate or not original:
        return False
    if candidate.strip().lower() == original.strip().lower():
        return False
    stripped, found = _strip_all(candidate.strip(), _PROVIDER_PREFIX_RES)
    return found and stripped.lower() == original.strip().lower()


def is_provider_suffixed(candidate: str, original: str) -> bool:
    """True when ``candidate`` is ``original`` followed by provider-added suffixes."""
    if not candidate or not original:
        return False
    cand = candidate.strip()
    orig = original.strip()
    cand_lower = cand.lower()
    orig_lower = orig.lower()
    if cand_lower == orig_lower:
        return False

    for pattern in _PROVIDER_SUFFIX_RES:
        stripped = pattern.sub("", cand, count=1).strip()
        if stripped != cand and stripped.lower() == orig_lower:
            return True

    if cand_lower.startswith(orig_lower):
        remainder = cand[len(orig):]
        if remainder.startswith(_SUFFIX_SEPARATORS):
            return True

    stripped, found = _strip_all(cand, _PROVIDER_SUFFIX_RES)
    return found and stripped.lower() == orig_lower
