"""Channel reconciliation analysis.

For one channel the analyzer compares the aliases it lists and the mapping
targets behind them with what the upstream actually offers:

1. resolve the upstream model list (cache, authoritative fetch, generic
   listing); when none is available fall back to degraded mode
2. check every mapping entry; a target missing upstream is broken and is
   either re-pointed at a renamed/upgraded model or marked for removal
3. check every unmapped alias; missing ones go through the rename search,
   present ones optionally through the version-upgrade search

``analyze_models`` and ``analyze_degraded`` are pure; ``ChannelAnalyzer``
adds upstream resolution and caching around them.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from ..api.client import ChannelProvider
from ..api.payloads import ChannelRecord
from ..core.config import DEFAULT_RANK_LIMIT, MIN_MATCH_SCORE, Valves
from ..core.errors import AuthError, ReconcilerError
from ..matching.affixes import strip_provider_affixes
from ..matching.classifier import compare_versions, parse_version, strip_model_prefix
from ..matching.matcher import (
    MatchCandidate,
    confidence_for,
    find_best_match_for_renamed,
    find_version_upgrade_match,
    rank_candidates,
)
from ..matching.rules import RuleSet
from ..models.cache import ProviderModelCache, build_cache_key
from .fixes import build_alias_for_actual_change, replace_version_in_name
from .results import (
    FIX_BROKEN_TARGET,
    FIX_DEGRADED_PATTERN,
    FIX_MAPPING_UPGRADE,
    FIX_MAPPING_VERSION_UPGRADE,
    FIX_MISSING_MODEL,
    FIX_MODEL_UPGRADE,
    FIX_REMOVE_INVALID,
    AnalysisResult,
    BrokenMapping,
    MappingFix,
    UpstreamSource,
)

LOGGER = logging.getLogger(__name__)

DEGRADED_SCORE = 90
MAPPING_UPGRADE_SCORE = 90

_REASON_TARGET_MISSING = "mapping target is no longer offered upstream"
_REASON_MODEL_MISSING = "model is no longer offered upstream"
_REASON_DEGRADED = "provider-decorated alias without its plain name; upstream list unavailable"


# -----------------------------------------------------------------------------
# Match selection
# -----------------------------------------------------------------------------

def select_preferred_match(
    rename: Optional[MatchCandidate],
    upgrade: Optional[MatchCandidate],
    *,
    min_score: int = MIN_MATCH_SCORE,
) -> Optional[MatchCandidate]:
    """Pick between a rename match and a version-upgrade match.

    Only one passing the floor wins outright. Otherwise a rule hit wins, then
    the higher resolved version, then the higher score (ties go to the
    upgrade).
    """
    if upgrade is None:
        return rename
    if rename is None:
        return upgrade
    rename_ok = rename.score >= min_score
    upgrade_ok = upgrade.score >= min_score
    if rename_ok != upgrade_ok:
        return rename if rename_ok else upgrade
    if rename_ok and rename.method.startswith("rule-"):
        return rename
    rename_version = parse_version(rename.name)
    upgrade_version = parse_version(upgrade.name)
    if rename_version is not None and upgrade_version is not None:
        order = compare_versions(upgrade_version, rename_version)
        if order > 0:
            return upgrade
        if order < 0:
            return rename
    return upgrade if upgrade.score >= rename.score else rename


def _rename_search(source: str, upstream: list[str], rules: Optional[RuleSet]) -> Optional[MatchCandidate]:
    if rules is not None and not rules.is_empty:
        hit = rules.match(source, upstream)
        if hit is not None:
            return hit
    return find_best_match_for_renamed(source, upstream)


def _candidate_list(
    source: str,
    alias: str,
    upstream: list[str],
    upgrade: Optional[MatchCandidate],
    limit: int,
) -> tuple[dict[str, Any], ...]:
    ranked = rank_candidates(source, upstream, limit)
    if upgrade is not None and all(item.name.lower() != upgrade.name.lower() for item in ranked):
        ranked.append(upgrade)
        ranked.sort(key=lambda item: (-item.score, item.name.lower()))
    entries = []
    for item in ranked[:limit]:
        entry = item.to_dict()
        entry["alias"] = build_alias_for_actual_change(alias, source, item.name)
        entries.append(entry)
    return tuple(entries)


def _find_mapping_upgrade(alias: str, target: str, upstream: list[str]) -> Optional[tuple[str, MatchCandidate]]:
    """Newer upstream model for a still-valid mapping target, with the alias carried along."""
    match = find_version_upgrade_match(target, upstream, require_same_suffix=True)
    if match is None:
        return None
    old_info = parse_version(target)
    new_info = parse_version(match.name)
    new_alias = alias
    if old_info is not None and new_info is not None:
        new_alias = replace_version_in_name(alias, old_info.version_text, new_info.version_text)
    return new_alias, match


# -----------------------------------------------------------------------------
# Pure analysis
# -----------------------------------------------------------------------------

def analyze_degraded(
    channel_id: Any,
    selected: list[str],
    mapping: dict[str, str],
    *,
    channel_name: str = "",
) -> AnalysisResult:
    """Self-comparison used when no upstream list is available.

    A selected name carrying provider decorations whose plain name is not
    itself selected suggests the plain name was meant as the alias. Such
    proposals are never upstream-verified and carry low confidence.
    """
    selected_lower = {name.lower() for name in selected}
    mapped_lower = {alias.lower(): target.lower() for alias, target in mapping.items()}
    broken: list[BrokenMapping] = []
    fixes: list[MappingFix] = []
    for name in selected:
        core = strip_provider_affixes(name)
        if not core or core.lower() == name.lower() or core.lower() in selected_lower:
            continue
        if mapped_lower.get(core.lower()) == name.lower():
            continue
        LOGGER.info("Degraded mode: %s looks like a decorated %s", name, core)
        broken.append(BrokenMapping(alias=core, expected_target=core, reason=_REASON_DEGRADED))
        fixes.append(
            MappingFix(
                source_alias=name,
                standard_name=core,
                actual_name=name,
                fix_type=FIX_DEGRADED_PATTERN,
                method=FIX_DEGRADED_PATTERN,
                score=DEGRADED_SCORE,
                confidence="low",
                action="add",
            )
        )
    if not fixes:
        LOGGER.warning("Channel %s: upstream models unavailable; nothing could be verified", channel_id)
    return AnalysisResult(
        channel_id=channel_id,
        channel_name=channel_name,
        has_changes=bool(fixes),
        broken_mappings=tuple(broken),
        new_mappings=tuple(fixes),
        current_models=tuple(selected),
        selected_models=tuple(selected),
        upstream_source="degraded",
        degraded=True,
        verified=False,
    )


def analyze_models(
    channel_id: Any,
    selected: list[str],
    mapping: dict[str, str],
    upstream: Iterable[str],
    *,
    include_upgrades: bool = False,
    rules: Optional[RuleSet] = None,
    rank_limit: int = DEFAULT_RANK_LIMIT,
    channel_name: str = "",
    upstream_source: UpstreamSource = "fetch_models",
) -> AnalysisResult:
    upstream_list = [name for name in upstream if isinstance(name, str) and name.strip()]
    upstream_lower = {name.lower() for name in upstream_list}
    broken: list[BrokenMapping] = []
    fixes: list[MappingFix] = []
    suggested: set[str] = set()

    # Mapped aliases
    for alias, target in mapping.items():
        if target.lower() in upstream_lower:
            if not include_upgrades:
                continue
            found = _find_mapping_upgrade(alias, target, upstream_list)
            if found is None:
                continue
            new_alias, match = found
            if new_alias.lower() == alias.lower() and match.name.lower() == target.lower():
                continue
            LOGGER.info("Mapping %s -> %s can move to %s", alias, target, match.name)
            fixes.append(
                MappingFix(
                    source_alias=alias,
                    standard_name=new_alias,
                    actual_name=match.name,
                    fix_type=FIX_MAPPING_VERSION_UPGRADE,
                    method=FIX_MAPPING_VERSION_UPGRADE,
                    score=MAPPING_UPGRADE_SCORE,
                    confidence=confidence_for(MAPPING_UPGRADE_SCORE),
                    original_target=target,
                    candidates=_candidate_list(target, alias, upstream_list, match, rank_limit),
                )
            )
            suggested.add(alias.lower())
            continue

        broken.append(BrokenMapping(alias=alias, expected_target=target, reason=_REASON_TARGET_MISSING))
        rule_hit = rules.match(alias, upstream_list) if rules is not None and not rules.is_empty else None
        rename = rule_hit or _rename_search(target, upstream_list, rules)
        upgrade = find_version_upgrade_match(target, upstream_list) if include_upgrades else None
        best = select_preferred_match(rename, upgrade)
        suggested.add(alias.lower())

        if best is None or best.score < MIN_MATCH_SCORE:
            LOGGER.info("Mapping %s -> %s is broken with no replacement", alias, target)
            fixes.append(
                MappingFix(
                    source_alias=alias,
                    standard_name=alias,
                    actual_name=None,
                    fix_type=FIX_REMOVE_INVALID,
                    method=best.method if best is not None else "remove-broken-mapping",
                    score=best.score if best is not None else 0,
                    confidence="low",
                    action="delete",
                    original_target=target,
                    candidates=_candidate_list(target, alias, upstream_list, upgrade, rank_limit),
                )
            )
            continue

        new_alias = build_alias_for_actual_change(alias, target, best.name)
        alias_changed = new_alias.lower() != alias.lower()
        LOGGER.info("Mapping %s -> %s is broken; proposing %s -> %s", alias, target, new_alias, best.name)
        fixes.append(
            MappingFix(
                source_alias=alias,
                standard_name=new_alias,
                actual_name=best.name,
                fix_type=FIX_MAPPING_UPGRADE if alias_changed else FIX_BROKEN_TARGET,
                method=best.method,
                score=best.score,
                confidence=best.confidence,
                original_target=target,
                candidates=_candidate_list(target, alias, upstream_list, upgrade, rank_limit),
            )
        )

    # Unmapped aliases
    mapped_lower = {alias.lower() for alias in mapping}
    for alias in selected:
        alias_lower = alias.lower()
        if alias_lower in mapped_lower or alias_lower in suggested:
            continue

        if alias_lower in upstream_lower:
            if not include_upgrades:
                continue
            upgrade = find_version_upgrade_match(alias, upstream_list)
            if upgrade is None or upgrade.score < MIN_MATCH_SCORE or upgrade.name.lower() == alias_lower:
                continue
            LOGGER.info("Model %s can be upgraded to %s", alias, upgrade.name)
            fixes.append(
                MappingFix(
                    source_alias=alias,
                    standard_name=strip_model_prefix(upgrade.name),
                    actual_name=upgrade.name,
                    fix_type=FIX_MODEL_UPGRADE,
                    method=upgrade.method,
                    score=upgrade.score,
                    confidence=upgrade.confidence,
                    action="add",
                    candidates=_candidate_list(alias, alias, upstream_list, upgrade, rank_limit),
                )
            )
            continue

        rename = _rename_search(alias, upstream_list, rules)
        upgrade = find_version_upgrade_match(alias, upstream_list) if include_upgrades else None
        best = select_preferred_match(rename, upgrade)
        broken.append(BrokenMapping(alias=alias, expected_target=alias, reason=_REASON_MODEL_MISSING))
        candidates = _candidate_list(alias, alias, upstream_list, upgrade, rank_limit)

        if best is None or best.score < MIN_MATCH_SCORE:
            LOGGER.info("Model %s is missing upstream with no replacement", alias)
            fixes.append(
                MappingFix(
                    source_alias=alias,
                    standard_name=alias,
                    actual_name=None,
                    fix_type=FIX_REMOVE_INVALID,
                    method=best.method if best is not None else FIX_REMOVE_INVALID,
                    score=best.score if best is not None else 0,
                    confidence="low",
                    action="delete",
                    candidates=candidates,
                )
            )
            continue
        if best.name.lower() == alias_lower:
            continue
        LOGGER.info("Model %s was renamed upstream to %s (%s, %d)", alias, best.name, best.method, best.score)
        fixes.append(
            MappingFix(
                source_alias=alias,
                standard_name=strip_model_prefix(best.name),
                actual_name=best.name,
                fix_type=FIX_MISSING_MODEL,
                method=best.method,
                score=best.score,
                confidence=best.confidence,
                action="add",
                candidates=candidates,
            )
        )

    return AnalysisResult(
        channel_id=channel_id,
        channel_name=channel_name,
        has_changes=bool(broken or fixes),
        broken_mappings=tuple(broken),
        new_mappings=tuple(fixes),
        current_models=tuple(upstream_list),
        selected_models=tuple(selected),
        upstream_source=upstream_source,
    )


# -----------------------------------------------------------------------------
# Analyzer
# -----------------------------------------------------------------------------

class ChannelAnalyzer:
    """Resolves a channel's upstream models and runs the analysis."""

    def __init__(
        self,
        client: ChannelProvider,
        cache: ProviderModelCache,
        valves: Valves,
        *,
        rank_limit: int = DEFAULT_RANK_LIMIT,
    ) -> None:
        self.client = client
        self.cache = cache
        self.valves = valves
        self.rank_limit = rank_limit
        self.logger = LOGGER

    def _cache_key(self, channel_id: Any) -> str:
        return build_cache_key(
            base_url=self.client.base_url,
            user_id=self.client.user_id,
            auth_header_type=self.valves.AUTH_HEADER_TYPE,
            channel_id=channel_id,
            token=self.valves.ACCESS_TOKEN,
        )

    async def resolve_upstream(
        self,
        channel: ChannelRecord,
        *,
        force_refresh: bool = False,
    ) -> tuple[list[str], UpstreamSource]:
        """Return ``(models, source)``; an empty list means degraded mode.

        Authentication failures propagate. Every other provider error only
        moves on to the next source.
        """
        key = self._cache_key(channel.id)
        if force_refresh:
            self.cache.invalidate(key)
        else:
            cached = self.cache.get(key)
            if cached:
                return cached, "cache"

        tiers = (
            ("fetch_models", self.client.fetch_upstream_models),
            ("channel_models", self.client.list_channel_models),
        )
        for source, fetch in tiers:
            try:
                models = await fetch(channel.id)
            except AuthError:
                raise
            except ReconcilerError as exc:
                self.logger.warning("Channel %s: %s lookup failed: %s", channel.id, source, exc.message)
                continue
            if models:
                self.cache.set(key, models)
                self.logger.debug("Channel %s: %d upstream models via %s", channel.id, len(models), source)
                return list(models), source  # type: ignore[return-value]
            self.logger.debug("Channel %s: %s returned no models", channel.id, source)
        return [], "degraded"

    async def analyze(
        self,
        channel: ChannelRecord,
        *,
        include_upgrades: bool = False,
        rules: Optional[RuleSet] = None,
        force_refresh: bool = False,
    ) -> AnalysisResult:
        selected = channel.selected_models
        mapping = channel.mapping
        if not selected and not mapping:
            self.logger.info("Channel %s lists no models", channel.id)
            return AnalysisResult(channel_id=channel.id, channel_name=channel.name)

        upstream, source = await self.resolve_upstream(channel, force_refresh=force_refresh)
        if not upstream:
            self.logger.warning("Channel %s: upstream models unavailable, using degraded mode", channel.id)
            return analyze_degraded(channel.id, selected, mapping, channel_name=channel.name)

        result = analyze_models(
            channel.id,
            selected,
            mapping,
            upstream,
            include_upgrades=include_upgrades,
            rules=rules,
            rank_limit=self.rank_limit,
            channel_name=channel.name,
            upstream_source=source,
        )
        self.logger.info(
            "Channel %s: %d broken, %d proposed fix(es)",
            channel.id,
            len(result.broken_mappings),
            len(result.new_mappings),
        )
        return result
