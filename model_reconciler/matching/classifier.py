"""Model name classification.

Pure helpers that turn a model name into the signals the matcher relies on:
- ``classify_family``: provider/series family via ordered pattern rules
- ``extract_functional_suffix``: capability tag such as ``vision`` or ``coder``
- ``parse_version`` / ``compare_versions``: numeric version extraction and ordering
- ``is_family_compatible`` / ``is_variant_compatible``: compatibility checks

Names are compared case-insensitively everywhere.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

UNKNOWN_PROVIDER = "unknown"

# Provider -> ordered (pattern, series). First match wins, evaluated on the lower-cased name.
_FAMILY_RULES: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = (
    (
        "openai",
        (
            (r"gpt-?4\.?1", "gpt-4.1"),
            (r"gpt-?4o", "gpt-4o"),
            (r"gpt-?4", "gpt-4"),
            (r"gpt-?3\.?5", "gpt-3.5"),
            (r"(?<![a-z0-9])o1-?mini", "o1-mini"),
            (r"(?<![a-z0-9])o1-?preview", "o1-preview"),
            (r"(?<![a-z0-9])o1-?pro", "o1-pro"),
            (r"(?<![a-z0-9])o3-?mini", "o3-mini"),
            (r"(?<![a-z0-9])o3(?![0-9])", "o3"),
        ),
    ),
    (
        "anthropic",
        (
            (r"claude-?4-?opus", "claude-4-opus"),
            (r"claude-?4-?sonnet", "claude-4-sonnet"),
            (r"claude-?4-?haiku", "claude-4-haiku"),
            (r"claude-?3[.-]?7", "claude-3.7"),
            (r"claude-?3[.-]?5", "claude-3.5"),
            (r"claude-?3-?opus", "claude-3-opus"),
            (r"claude-?3-?sonnet", "claude-3-sonnet"),
            (r"claude-?3-?haiku", "claude-3-haiku"),
            (r"claude-?3", "claude-3"),
            (r"claude-?2", "claude-2"),
        ),
    ),
    (
        "google",
        (
            (r"gemini-?3-?pro", "gemini-3-pro"),
            (r"gemini-?3-?flash", "gemini-3-flash"),
            (r"gemini-?2\.?5-?pro", "gemini-2.5-pro"),
            (r"gemini-?2\.?5-?flash", "gemini-2.5-flash"),
            (r"gemini-?2\.?0", "gemini-2.0"),
            (r"gemini-?1\.?5-?pro", "gemini-1.5-pro"),
            (r"gemini-?1\.?5-?flash", "gemini-1.5-flash"),
            (r"gemini-?pro", "gemini-pro"),
        ),
    ),
    (
        "meta",
        (
            (r"llama-?3\.?3", "llama-3.3"),
            (r"llama-?3\.?2", "llama-3.2"),
            (r"llama-?3\.?1", "llama-3.1"),
            (r"llama-?3", "llama-3"),
            (r"llama-?2", "llama-2"),
        ),
    ),
    (
        "mistral",
        (
            (r"mistral-?large", "mistral-large"),
            (r"mistral-?medium", "mistral-medium"),
            (r"mistral-?small", "mistral-small"),
            (r"mixtral", "mixtral"),
        ),
    ),
    (
        "deepseek",
        (
            (r"deepseek-?v3", "deepseek-v3"),
            (r"deepseek-?v2", "deepseek-v2"),
            (r"deepseek-?coder", "deepseek-coder"),
            (r"deepseek-?chat", "deepseek-chat"),
        ),
    ),
    (
        "alibaba",
        (
            (r"qwen-?2\.?5", "qwen-2.5"),
            (r"qwen-?2", "qwen-2"),
            (r"qwen-?max", "qwen-max"),
            (r"qwen-?plus", "qwen-plus"),
        ),
    ),
)

_COMPILED_FAMILY_RULES: tuple[tuple[str, re.Pattern[str], str], ...] = tuple(
    (provider, re.compile(pattern), series)
    for provider, rules in _FAMILY_RULES
    for pattern, series in rules
)

# Priority-ordered capability tags.
FUNCTIONAL_SUFFIXES: tuple[str, ...] = (
    "image",
    "vision",
    "audio",
    "video",
    "multimodal",
    "code",
    "coder",
    "instruct",
    "chat",
    "embedding",
    "search",
    "thinking",
    "reasoning",
)
_FUNCTIONAL_SUFFIX_RES = tuple(
    (tag, re.compile(rf"[-_]{tag}(?:[-_]|$)")) for tag in FUNCTIONAL_SUFFIXES
)

PREFERRED_VARIANTS: tuple[str, ...] = (
    "mini",
    "nano",
    "lite",
    "small",
    "turbo",
    "pro",
    "flash",
    "opus",
    "sonnet",
    "haiku",
)

_TIER_SUFFIX_RE = re.compile(r"-?(opus|sonnet|haiku|turbo|mini|nano|lite)$")

_MODEL_PREFIX_RES = (
    re.compile(r"^\[.+?\]"),
    re.compile(r"^【.+?】"),
    re.compile(r"^\(.+?\)"),
    re.compile(r"^（.+?）"),
    re.compile(r"^@[A-Za-z0-9_-]+/"),
)

_VERSION_RE = re.compile(r"^(.*?)(\d+(?:\.\d+)*)(.*)$", re.DOTALL)
# Dash/underscore separated minor components ("claude-3-5-sonnet"); 1-2 digits so dates never join.
_DASHED_COMPONENT_RE = re.compile(r"^[-_](\d{1,2})(?=$|[-_./])")
_SEPARATORS = "-_./ "
_TOKEN_SPLIT_RE = re.compile(r"[-_/]")


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ModelFamily:
    provider: str
    series: str

    @property
    def is_unknown(self) -> bool:
        return self.provider == UNKNOWN_PROVIDER


@dataclass(frozen=True, slots=True)
class VersionInfo:
    """Numeric version extracted from a model name.

    ``version_parts`` are compared lexicographically with missing trailing
    components treated as zero, so ``(3,)`` equals ``(3, 0)``.
    """

    base: str
    version_parts: tuple[int, ...] = field(default_factory=tuple)
    variant: str = ""
    suffix: str = ""
    version_text: str = ""

    @property
    def major(self) -> int:
        return self.version_parts[0] if self.version_parts else 0


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------

def strip_model_prefix(name: str) -> str:
    """Remove provider brackets (``[x]``, ``【x】``, ``(x)``, ``（x）``) and ``@provider/`` prefixes."""
    text = (name or "").strip()
    changed = True
    while changed and text:
        changed = False
        for pattern in _MODEL_PREFIX_RES:
            stripped = pattern.sub("", text, count=1).strip()
            if stripped != text and stripped:
                text = stripped
                changed = True
    return text


def classify_family(name: str) -> ModelFamily:
    """Return the provider/series family, or ``unknown`` with a two-token series."""
    lowered = (name or "").lower()
    for provider, pattern, series in _COMPILED_FAMILY_RULES:
        if pattern.search(lowered):
            return ModelFamily(provider, series)
    tokens = [token for token in re.split(r"[-_]", strip_model_prefix(lowered)) if token]
    return ModelFamily(UNKNOWN_PROVIDER, "-".join(tokens[:2]))


def extract_functional_suffix(name: str) -> str:
    lowered = (name or "").lower()
    for tag, pattern in _FUNCTIONAL_SUFFIX_RES:
        if pattern.search(lowered):
            return tag
    return ""


def is_family_compatible(first: ModelFamily, second: ModelFamily) -> bool:
    """True when either family is unknown, or provider and tier-stripped series agree."""
    if first.is_unknown or second.is_unknown:
        return True
    if first.provider != second.provider:
        return False
    return _TIER_SUFFIX_RE.sub("", first.series) == _TIER_SUFFIX_RE.sub("", second.series)


def is_same_family(source: str, candidate: str) -> bool:
    return is_family_compatible(classify_family(source), classify_family(candidate))


# -----------------------------------------------------------------------------
# Versions
# -----------------------------------------------------------------------------

def _pick_variant(suffix: str) -> str:
    tokens = [token for token in _TOKEN_SPLIT_RE.split(suffix) if token]
    if not tokens:
        return ""
    for token in tokens:
        if token in PREFERRED_VARIANTS:
            return token
    first = tokens[0]
    return "" if first.isdigit() else first


def parse_version(name: str) -> Optional[VersionInfo]:
    """Parse ``<base><digits(.digits)*><suffix>`` out of a model name.

    Returns None when the name has no digits or nothing precedes the first
    digit run.
    """
    text = strip_model_prefix(name)
    match = _VERSION_RE.match(text)
    if not match:
        return None
    base = match.group(1).rstrip(_SEPARATORS).lower()
    if not base:
        return None
    parts = [int(piece) for piece in match.group(2).split(".")]
    rest = match.group(3)
    while True:
        dashed = _DASHED_COMPONENT_RE.match(rest)
        if not dashed:
            break
        parts.append(int(dashed.group(1)))
        rest = rest[dashed.end():]
    suffix = rest.lstrip(_SEPARATORS).lower()
    version_text = text[match.start(2): len(text) - len(rest)]
    return VersionInfo(
        base=base,
        version_parts=tuple(parts),
        variant=_pick_variant(suffix),
        suffix=suffix,
        version_text=version_text,
    )


VersionLike = Union[VersionInfo, Sequence[int]]


def _parts(value: VersionLike) -> Sequence[int]:
    if isinstance(value, VersionInfo):
        return value.version_parts
    return value


def compare_versions(first: VersionLike, second: VersionLike) -> int:
    """Return -1, 0 or 1 comparing version parts, padding the shorter side with zeros."""
    a = _parts(first)
    b = _parts(second)
    for index in range(max(len(a), len(b))):
        left = a[index] if index < len(a) else 0
        right = b[index] if index < len(b) else 0
        if left < right:
            return -1
        if left > right:
            return 1
    return 0


def is_variant_compatible(source: str, target: str) -> bool:
    """A variant-less source only upgrades to variant-less targets; otherwise variants must match."""
    if not source:
        return not target
    return source == target
