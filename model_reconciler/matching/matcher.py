"""Fuzzy model-name matching.

Three entry points feed the analyzer:
- ``find_best_match``: pooled multi-stage scoring (exact, affix, contains,
  keyword overlap, edit distance) with a 60-point acceptance floor
- ``find_best_match_for_renamed``: provider-affix and core-name matching for
  models an upstream silently renamed
- ``find_version_upgrade_match``: same base/variant, strictly newer version

``rank_candidates`` exposes the merged scores for human selection.

Every stage refuses candidates from an incompatible family and candidates
that would quietly downgrade a model to a cheaper mini/nano/lite/small tier.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Literal, Optional

from ..core.config import DEFAULT_RANK_LIMIT, MAX_RANK_LIMIT, MIN_MATCH_SCORE, RENAME_ACCEPT_SCORE
from ..core.utils import _clamp_int
from .affixes import extract_core_name, is_provider_prefixed, is_provider_suffixed
from .classifier import (
    ModelFamily,
    classify_family,
    compare_versions,
    extract_functional_suffix,
    is_family_compatible,
    is_variant_compatible,
    parse_version,
)

LOGGER = logging.getLogger(__name__)

Confidence = Literal["high", "medium", "low"]

# Stage order doubles as the tie-breaker: lower wins on equal score.
STAGE_EXACT = 0
STAGE_AFFIX = 1
STAGE_CONTAIN = 2
STAGE_SEMANTIC = 3
STAGE_EDIT = 4

SUFFIX_MISMATCH_PENALTY = 20
SUFFIX_PENALTY_FLOOR = 50
EDIT_DISTANCE_FLOOR = 50

_DOWNGRADE_RE = re.compile(r"[-_](?:mini|nano|lite|small)$")
_KEYWORD_SPLIT_RE = re.compile(r"[-_\s\d]+")
_COMPACT_RE = re.compile(r"[-_.\s/]+")
_SUFFIX_BOUNDARY = ("-", "_", "/", "]", "】", ")", "）", "@")


@dataclass(slots=True)
class MatchCandidate:
    name: str
    score: int
    method: str
    confidence: Confidence = "medium"
    stage: int = field(default=STAGE_EXACT, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("stage", None)
        return data


def confidence_for(score: int) -> Confidence:
    if score >= 90:
        return "high"
    if score >= 75:
        return "medium"
    return "low"


# -----------------------------------------------------------------------------
# Similarity helpers
# -----------------------------------------------------------------------------

def levenshtein_distance(first: str, second: str) -> int:
    if first == second:
        return 0
    if not first:
        return len(second)
    if not second:
        return len(first)
    previous = list(range(len(second) + 1))
    for i, left in enumerate(first, start=1):
        current = [i]
        for j, right in enumerate(second, start=1):
            cost = 0 if left == right else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def edit_similarity(first: str, second: str) -> float:
    longest = max(len(first), len(second))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(first, second) / longest


def _keywords(name: str) -> set[str]:
    return {token for token in _KEYWORD_SPLIT_RE.split(name.lower()) if len(token) > 2}


def keyword_similarity(first: str, second: str) -> float:
    """Jaccard similarity over separator/digit-split keywords longer than two characters."""
    left = _keywords(first)
    right = _keywords(second)
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def char_set_similarity(first: str, second: str) -> float:
    left = set(first.lower())
    right = set(second.lower())
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def is_downgrade(source: str, candidate: str) -> bool:
    """True when ``candidate`` extends ``source`` with a cheaper tier suffix."""
    src = source.strip().lower()
    cand = candidate.strip().lower()
    return len(cand) > len(src) and cand.startswith(src) and bool(_DOWNGRADE_RE.search(cand))


# -----------------------------------------------------------------------------
# Pooled matcher
# -----------------------------------------------------------------------------

class _Source:
    """Pre-computed signals for the name being matched."""

    __slots__ = ("name", "lower", "family", "suffix", "compact", "version")

    def __init__(self, name: str) -> None:
        self.name = name.strip()
        self.lower = self.name.lower()
        self.family: ModelFamily = classify_family(self.name)
        self.suffix = extract_functional_suffix(self.name)
        self.compact = _COMPACT_RE.sub("", self.lower)
        self.version = parse_version(self.name)


def _apply_suffix_rule(source_suffix: str, candidate_suffix: str, score: int) -> Optional[int]:
    """Exclude conflicting capability tags; penalize a one-sided tag."""
    if source_suffix == candidate_suffix:
        return score
    if source_suffix and candidate_suffix:
        return None
    return max(min(score, SUFFIX_PENALTY_FLOOR), score - SUFFIX_MISMATCH_PENALTY)


def _affix_score(src: _Source, cand: str, cand_lower: str) -> tuple[int, str]:
    best = (0, "")
    if cand_lower.startswith(src.lower + "-") or cand_lower.startswith(src.lower + "_"):
        best = max(best, (85, "prefix"))
    if cand_lower.endswith(src.lower) and cand_lower[: -len(src.lower)].endswith(_SUFFIX_BOUNDARY):
        best = max(best, (80, "suffix"))
    if src.version is not None:
        cand_version = parse_version(cand)
        if (
            cand_version is not None
            and cand_version.base == src.version.base
            and cand_version.major == src.version.major
        ):
            best = max(best, (90, "version"))
    if src.compact and _COMPACT_RE.sub("", cand_lower) == src.compact:
        best = max(best, (75, "abbreviation"))
    return best


def _contain_score(src: _Source, cand_lower: str) -> int:
    if src.lower in cand_lower:
        haystack, needle = cand_lower, src.lower
    elif cand_lower in src.lower:
        haystack, needle = src.lower, cand_lower
    else:
        return 0
    score = 60
    if haystack.startswith(needle):
        score += 10
    if haystack.endswith(needle):
        score += 5
    if len(needle) / max(1, len(haystack)) > 0.7:
        score += 15
    return score


def score_candidates(source: str, candidates: Iterable[str]) -> list[MatchCandidate]:
    """Run every stage, pool the results and keep the best entry per name.

    The returned list is sorted by score descending, then by stage order,
    then by original candidate order. No acceptance floor is applied.
    """
    if not source or not source.strip():
        return []
    src = _Source(source)
    pooled: dict[str, tuple[int, int, int, str]] = {}
    names: dict[str, str] = {}

    def _offer(name: str, score: int, stage: int, order: int, method: str) -> None:
        key = name.lower()
        current = pooled.get(key)
        entry = (score, stage, order, method)
        if current is None or (-score, stage, order) < (-current[0], current[1], current[2]):
            pooled[key] = entry
            names[key] = name

    for order, raw in enumerate(candidates):
        if not isinstance(raw, str) or not raw.strip():
            continue
        cand = raw.strip()
        cand_lower = cand.lower()

        if cand_lower == src.lower:
            _offer(cand, 100, STAGE_EXACT, order, "exact")
            continue
        if is_downgrade(src.name, cand):
            continue
        if not is_family_compatible(src.family, classify_family(cand)):
            continue
        cand_suffix = extract_functional_suffix(cand)

        affix, method = _affix_score(src, cand, cand_lower)
        if affix:
            adjusted = _apply_suffix_rule(src.suffix, cand_suffix, affix)
            if adjusted is not None:
                _offer(cand, adjusted, STAGE_AFFIX, order, method)

        contain = _contain_score(src, cand_lower)
        if contain:
            adjusted = _apply_suffix_rule(src.suffix, cand_suffix, contain)
            if adjusted is not None:
                _offer(cand, adjusted, STAGE_CONTAIN, order, "contains")

        similarity = keyword_similarity(src.lower, cand_lower)
        if similarity > 0.3:
            adjusted = _apply_suffix_rule(src.suffix, cand_suffix, round(similarity * 50))
            if adjusted is not None:
                _offer(cand, adjusted, STAGE_SEMANTIC, order, "semantic")

        similarity = edit_similarity(src.lower, cand_lower)
        if similarity > 0.5:
            adjusted = _apply_suffix_rule(src.suffix, cand_suffix, round(similarity * 40))
            if adjusted is not None and adjusted >= EDIT_DISTANCE_FLOOR:
                _offer(cand, adjusted, STAGE_EDIT, order, "levenshtein")

    ranked = sorted(pooled.items(), key=lambda item: (-item[1][0], item[1][1], item[1][2]))
    return [
        MatchCandidate(
            name=names[key],
            score=score,
            method=method,
            confidence=confidence_for(score),
            stage=stage,
        )
        for key, (score, stage, _order, method) in ranked
    ]


def find_best_match(
    source: str,
    candidates: Iterable[str],
    *,
    min_score: int = MIN_MATCH_SCORE,
) -> Optional[MatchCandidate]:
    """Return the best pooled candidate, or None when nothing reaches ``min_score``."""
    scored = score_candidates(source, candidates)
    if not scored or scored[0].score < min_score:
        return None
    return scored[0]


# -----------------------------------------------------------------------------
# Renamed models
# -----------------------------------------------------------------------------

def _renamed_score(source: str, core: str, cand: str) -> Optional[MatchCandidate]:
    if is_provider_prefixed(cand, source):
        return MatchCandidate(cand, 95, "provider-prefix", "high", STAGE_AFFIX)
    if is_provider_suffixed(cand, source):
        return MatchCandidate(cand, 93, "provider-suffix", "high", STAGE_AFFIX)
    cand_lower = cand.lower()
    core_lower = core.lower()
    if core_lower and core_lower in cand_lower:
        ratio = len(core) / len(cand)
        if ratio >= 0.6:
            return MatchCandidate(
                cand,
                round(75 + ratio * 20),
                "core-match",
                "high" if ratio >= 0.8 else "medium",
                STAGE_CONTAIN,
            )
    cand_core = extract_core_name(cand)
    if cand_core and cand_core.lower() in source.lower():
        ratio = len(cand_core) / len(source)
        if ratio >= 0.6:
            return MatchCandidate(cand, round(70 + ratio * 15), "reverse-core-match", "medium", STAGE_CONTAIN)
    return None


def _renamed_pool(source: str, candidates: Iterable[str]) -> list[MatchCandidate]:
    src = source.strip()
    family = classify_family(src)
    suffix = extract_functional_suffix(src)
    core = extract_core_name(src)
    results: list[MatchCandidate] = []
    for raw in candidates:
        if not isinstance(raw, str) or not raw.strip():
            continue
        cand = raw.strip()
        if cand.lower() == src.lower():
            results.append(MatchCandidate(cand, 100, "exact", "high", STAGE_EXACT))
            continue
        if not is_family_compatible(family, classify_family(cand)):
            continue
        if extract_functional_suffix(cand) != suffix:
            continue
        if is_downgrade(src, cand):
            continue
        scored = _renamed_score(src, core, cand)
        if scored is not None:
            results.append(scored)
    return results


def find_best_match_for_renamed(
    source: str,
    candidates: Iterable[str],
    *,
    min_score: int = MIN_MATCH_SCORE,
) -> Optional[MatchCandidate]:
    """Find the upstream name a model was renamed to.

    Provider-affixed and core-name matches are tried first, restricted to the
    same family and functional suffix. When none scores at least 70, the
    pooled matcher runs over candidates sharing the core name and the result
    is re-scored by character overlap.
    """
    if not source or not source.strip():
        return None
    pool = list(candidates)
    src = source.strip()
    for cand in pool:
        if isinstance(cand, str) and cand.strip().lower() == src.lower():
            return MatchCandidate(cand.strip(), 100, "exact", "high", STAGE_EXACT)

    best: Optional[MatchCandidate] = None
    for scored in _renamed_pool(src, pool):
        if best is None or scored.score > best.score:
            best = scored
        if best.score >= 95:
            break
    if best is not None and best.score >= RENAME_ACCEPT_SCORE:
        return best

    family = classify_family(src)
    core_lower = extract_core_name(src).lower()
    narrowed = [
        cand
        for cand in pool
        if isinstance(cand, str)
        and cand.strip()
        and is_family_compatible(family, classify_family(cand))
        and (core_lower in cand.lower() or extract_core_name(cand).lower() in src.lower())
    ]
    fallback = find_best_match(src, narrowed, min_score=min_score)
    if fallback is None:
        return None
    similarity = char_set_similarity(src, fallback.name)
    if similarity < 0.5:
        LOGGER.debug("Rejected smart match %s -> %s (overlap %.2f)", src, fallback.name, similarity)
        return None
    score = round(60 + similarity * 30)
    if score < min_score:
        return None
    return MatchCandidate(fallback.name, score, "smart-match", confidence_for(score), fallback.stage)


# -----------------------------------------------------------------------------
# Version upgrades
# -----------------------------------------------------------------------------

def find_version_upgrade_match(
    source: str,
    candidates: Iterable[str],
    *,
    require_same_suffix: bool = False,
) -> Optional[MatchCandidate]:
    """Return the newest candidate that is a strict version upgrade of ``source``.

    Candidates must share the parsed base, have a compatible variant and the
    same functional suffix. With ``require_same_suffix`` the text after the
    version must match too (used for mapping targets, where ``-0613`` style
    suffixes are significant).
    """
    source_version = parse_version(source)
    if source_version is None:
        return None
    source_suffix = extract_functional_suffix(source)

    best: Optional[MatchCandidate] = None
    best_version = None
    for raw in candidates:
        if not isinstance(raw, str) or not raw.strip():
            continue
        cand = raw.strip()
        cand_version = parse_version(cand)
        if cand_version is None or cand_version.base != source_version.base:
            continue
        if not is_variant_compatible(source_version.variant, cand_version.variant):
            continue
        if extract_functional_suffix(cand) != source_suffix:
            continue
        if require_same_suffix and cand_version.suffix != source_version.suffix:
            continue
        if compare_versions(cand_version, source_version) <= 0:
            continue

        score = 90 if cand_version.major > source_version.major else 85
        if source_version.variant and cand_version.variant == source_version.variant:
            score += 3
        score = min(95, score)

        if best is not None and best_version is not None:
            order = compare_versions(cand_version, best_version)
            if order < 0 or (order == 0 and score <= best.score):
                continue
        best = MatchCandidate(cand, score, "version-upgrade", "high" if score >= 90 else "medium", STAGE_AFFIX)
        best_version = cand_version
    return best


# -----------------------------------------------------------------------------
# Ranking
# -----------------------------------------------------------------------------

def rank_candidates(
    source: str,
    candidates: Iterable[str],
    limit: int = DEFAULT_RANK_LIMIT,
) -> list[MatchCandidate]:
    """Top-N candidates for manual selection, de-duplicated by name."""
    limit = _clamp_int(limit, default=DEFAULT_RANK_LIMIT, minimum=1, maximum=MAX_RANK_LIMIT)
    if not source or not source.strip():
        return []
    pool = [cand.strip() for cand in candidates if isinstance(cand, str) and cand.strip()]
    merged: dict[str, MatchCandidate] = {}
    for scored in [*_renamed_pool(source, pool), *score_candidates(source, pool)]:
        key = scored.name.lower()
        current = merged.get(key)
        if current is None or scored.score > current.score:
            merged[key] = scored
    upgrade = find_version_upgrade_match(source, pool)
    if upgrade is not None:
        key = upgrade.name.lower()
        current = merged.get(key)
        if current is None or upgrade.score > current.score:
            merged[key] = upgrade
    ranked = sorted(merged.values(), key=lambda item: (-item.score, item.name.lower()))
    return ranked[:limit]
