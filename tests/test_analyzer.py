"""Tests for channel analysis: broken mappings, renames, upgrades and degraded mode."""

from __future__ import annotations

import pytest
from conftest import FakeChannelProvider, make_channel

from model_reconciler.api.payloads import ChannelRecord
from model_reconciler.core.errors import AuthError, ConnectivityError
from model_reconciler.matching.matcher import MatchCandidate
from model_reconciler.matching.rules import NameMatchRule, RuleSet
from model_reconciler.models.cache import ProviderModelCache
from model_reconciler.reconcile.analyzer import (
    ChannelAnalyzer,
    analyze_degraded,
    analyze_models,
    select_preferred_match,
)
from model_reconciler.reconcile.results import (
    FIX_DEGRADED_PATTERN,
    FIX_MAPPING_UPGRADE,
    FIX_MAPPING_VERSION_UPGRADE,
    FIX_MISSING_MODEL,
    FIX_MODEL_UPGRADE,
    FIX_REMOVE_INVALID,
)

CLAUDE_OLD = "claude-3-5-sonnet-20241022"


class TestAnalyzeModels:
    """Pure analysis over an already resolved upstream list."""

    def test_broken_mapping_proposes_version_upgrade(self) -> None:
        result = analyze_models(
            1,
            [CLAUDE_OLD],
            {CLAUDE_OLD: CLAUDE_OLD},
            ["claude-3-7-sonnet"],
            include_upgrades=True,
        )
        assert result.has_changes
        assert [item.alias for item in result.broken_mappings] == [CLAUDE_OLD]
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_MAPPING_UPGRADE
        assert fix.actual_name == "claude-3-7-sonnet"
        assert fix.standard_name == "claude-3-7-sonnet"
        assert fix.original_target == CLAUDE_OLD
        assert fix.method == "version-upgrade"
        assert fix.score >= 85

    def test_broken_mapping_without_upgrades_is_marked_for_removal(self) -> None:
        result = analyze_models(1, [CLAUDE_OLD], {CLAUDE_OLD: CLAUDE_OLD}, ["claude-3-7-sonnet"])
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_REMOVE_INVALID
        assert fix.action == "delete"
        assert fix.actual_name is None
        assert fix.is_removal
        assert fix.candidates[0]["name"] == "claude-3-7-sonnet"
        assert fix.candidates[0]["alias"] == "claude-3-7-sonnet"

    def test_provider_prefixed_rename(self) -> None:
        result = analyze_models(1, ["gpt-4o"], {}, ["[反重力]gpt-4o"])
        assert result.has_changes
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_MISSING_MODEL
        assert fix.source_alias == "gpt-4o"
        assert fix.standard_name == "gpt-4o"
        assert fix.actual_name == "[反重力]gpt-4o"
        assert fix.score == 95
        assert fix.method == "provider-prefix"
        assert fix.confidence == "high"

    def test_missing_model_without_candidate(self) -> None:
        result = analyze_models(1, ["mystery-model"], {}, ["gpt-4o"])
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_REMOVE_INVALID
        assert fix.score == 0
        assert fix.method == FIX_REMOVE_INVALID
        assert fix.action == "delete"

    def test_present_models_need_no_fix(self) -> None:
        result = analyze_models(1, ["gpt-4", "gpt-4o"], {}, ["gpt-4", "gpt-4o", "gpt-5"])
        assert not result.has_changes
        assert result.new_mappings == ()
        assert result.current_models == ("gpt-4", "gpt-4o", "gpt-5")

    def test_model_upgrade_when_enabled(self) -> None:
        result = analyze_models(1, ["gpt-4"], {}, ["gpt-4", "gpt-5"], include_upgrades=True)
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_MODEL_UPGRADE
        assert fix.actual_name == "gpt-5"
        assert fix.standard_name == "gpt-5"
        assert result.broken_mappings == ()

    def test_mapping_version_upgrade_carries_alias_version(self) -> None:
        result = analyze_models(
            1,
            ["my-gpt-4.1"],
            {"my-gpt-4.1": "gpt-4.1"},
            ["gpt-4.1", "gpt-4.5"],
            include_upgrades=True,
        )
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_MAPPING_VERSION_UPGRADE
        assert fix.standard_name == "my-gpt-4.5"
        assert fix.actual_name == "gpt-4.5"
        assert fix.original_target == "gpt-4.1"
        assert result.broken_mappings == ()

    def test_valid_mapping_untouched_without_upgrades(self) -> None:
        result = analyze_models(1, ["my-gpt-4.1"], {"my-gpt-4.1": "gpt-4.1"}, ["gpt-4.1", "gpt-4.5"])
        assert not result.has_changes

    def test_name_rule_wins(self) -> None:
        rules = RuleSet(name_matches=[NameMatchRule(source="house-model", target="gpt-4o")])
        result = analyze_models(1, ["house-model"], {}, ["gpt-4o"], rules=rules)
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_MISSING_MODEL
        assert fix.actual_name == "gpt-4o"
        assert fix.method == "rule-name-match"
        assert fix.score == 100

    def test_rule_applies_to_broken_mapping_alias(self) -> None:
        rules = RuleSet(name_matches=[NameMatchRule(source="house", target="gpt-4o")])
        result = analyze_models(1, ["house"], {"house": "retired-model"}, ["gpt-4o"], rules=rules)
        (fix,) = result.new_mappings
        assert fix.actual_name == "gpt-4o"
        assert fix.standard_name == "house"
        assert fix.method == "rule-name-match"

    def test_result_serializes(self) -> None:
        data = analyze_models(1, ["gpt-4o"], {}, ["[反重力]gpt-4o"], channel_name="main").to_dict()
        assert data["channel_name"] == "main"
        assert data["new_mappings"][0]["actual_name"] == "[反重力]gpt-4o"
        assert data["verified"] is True


class TestAnalyzeDegraded:
    def test_decorated_names_become_low_confidence_proposals(self) -> None:
        result = analyze_degraded(1, ["gpt-4o", "[x]claude-3-opus"], {})
        assert result.degraded
        assert not result.verified
        assert result.upstream_source == "degraded"
        (fix,) = result.new_mappings
        assert fix.fix_type == FIX_DEGRADED_PATTERN
        assert fix.standard_name == "claude-3-opus"
        assert fix.actual_name == "[x]claude-3-opus"
        assert fix.confidence == "low"

    def test_never_claims_verification(self) -> None:
        result = analyze_degraded(1, ["gpt-4o", "gpt-4o-官方"], {})
        assert not result.has_changes
        assert not result.verified
        assert result.degraded


class TestSelectPreferredMatch:
    def test_only_one_passes(self) -> None:
        rename = MatchCandidate("a", 50, "smart-match")
        upgrade = MatchCandidate("gpt-5", 93, "version-upgrade")
        assert select_preferred_match(rename, upgrade) is upgrade
        assert select_preferred_match(None, upgrade) is upgrade
        assert select_preferred_match(rename, None) is rename

    def test_rule_hit_beats_upgrade(self) -> None:
        rename = MatchCandidate("gpt-4o", 100, "rule-custom")
        upgrade = MatchCandidate("gpt-5", 93, "version-upgrade")
        assert select_preferred_match(rename, upgrade) is rename

    def test_higher_version_wins(self) -> None:
        rename = MatchCandidate("[x]gpt-4.1", 95, "provider-prefix")
        upgrade = MatchCandidate("gpt-4.5", 88, "version-upgrade")
        assert select_preferred_match(rename, upgrade) is upgrade

    def test_score_breaks_ties_in_favour_of_upgrade(self) -> None:
        rename = MatchCandidate("gpt-4o-latest", 88, "core-match")
        upgrade = MatchCandidate("gpt-4o-2024", 88, "version-upgrade")
        assert select_preferred_match(rename, upgrade) is upgrade


class TestChannelAnalyzer:
    """Upstream resolution, caching and degraded fallback."""

    @pytest.fixture
    def analyzer(self, fake_provider, valves) -> ChannelAnalyzer:
        return ChannelAnalyzer(fake_provider, ProviderModelCache(ttl_seconds=60), valves)

    @pytest.mark.asyncio
    async def test_analyzes_channel(self, analyzer, fake_provider) -> None:
        channel = await fake_provider.get_channel_detail(1)
        result = await analyzer.analyze(channel, include_upgrades=True)
        assert result.upstream_source == "fetch_models"
        fixes = {fix.source_alias: fix for fix in result.new_mappings}
        assert fixes["gpt-4o"].actual_name == "[反重力]gpt-4o"
        assert fixes[CLAUDE_OLD].actual_name == "claude-3-7-sonnet"

    @pytest.mark.asyncio
    async def test_reuses_cached_upstream(self, analyzer, fake_provider) -> None:
        channel = await fake_provider.get_channel_detail(1)
        await analyzer.analyze(channel)
        second = await analyzer.analyze(channel)
        assert fake_provider.fetch_calls == [1]
        assert second.upstream_source == "cache"

        await analyzer.analyze(channel, force_refresh=True)
        assert fake_provider.fetch_calls == [1, 1]

    @pytest.mark.asyncio
    async def test_falls_back_to_channel_model_listing(self, valves) -> None:
        provider = FakeChannelProvider(
            [make_channel(1, "gpt-4o")],
            {1: ConnectivityError("fetch failed")},
            channel_models={1: ["gpt-4o"]},
        )
        analyzer = ChannelAnalyzer(provider, ProviderModelCache(ttl_seconds=60), valves)
        result = await analyzer.analyze(await provider.get_channel_detail(1))
        assert result.upstream_source == "channel_models"
        assert not result.has_changes

    @pytest.mark.asyncio
    async def test_degraded_when_upstream_unavailable(self, valves) -> None:
        provider = FakeChannelProvider(
            [make_channel(1, "gpt-4o,[x]claude-3-opus")],
            {1: ConnectivityError("fetch failed")},
        )
        analyzer = ChannelAnalyzer(provider, ProviderModelCache(ttl_seconds=60), valves)
        result = await analyzer.analyze(await provider.get_channel_detail(1))
        assert result.degraded
        assert not result.verified
        assert [fix.fix_type for fix in result.new_mappings] == [FIX_DEGRADED_PATTERN]

    @pytest.mark.asyncio
    async def test_auth_errors_propagate(self, valves) -> None:
        provider = FakeChannelProvider([make_channel(1, "gpt-4o")], {1: AuthError("denied", status=401)})
        analyzer = ChannelAnalyzer(provider, ProviderModelCache(ttl_seconds=60), valves)
        with pytest.raises(AuthError):
            await analyzer.analyze(await provider.get_channel_detail(1))

    @pytest.mark.asyncio
    async def test_empty_channel(self, analyzer) -> None:
        result = await analyzer.analyze(ChannelRecord.from_api(make_channel(9, "")))
        assert not result.has_changes
        assert result.new_mappings == ()
