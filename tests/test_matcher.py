"""Tests for the fuzzy matcher, renamed-model search and version upgrades."""

from __future__ import annotations

import pytest

from model_reconciler.matching.classifier import _FAMILY_RULES, classify_family, is_same_family
from model_reconciler.matching.matcher import (
    MatchCandidate,
    char_set_similarity,
    confidence_for,
    find_best_match,
    find_best_match_for_renamed,
    find_version_upgrade_match,
    is_downgrade,
    levenshtein_distance,
    rank_candidates,
    score_candidates,
)


class TestFindBestMatch:
    """Pooled multi-stage scoring."""

    def test_exact_match_is_case_insensitive(self) -> None:
        match = find_best_match("gpt-4o", ["gpt-4o-2024", "GPT-4o"])
        assert match is not None
        assert match.name == "GPT-4o"
        assert match.score == 100
        assert match.method == "exact"
        assert match.confidence == "high"

    def test_never_downgrades_to_cheaper_tier(self) -> None:
        assert find_best_match("gpt-4o", ["gpt-4o-mini"]) is None
        assert find_best_match("gemini-2.5-flash", ["gemini-2.5-flash-lite"]) is None

    def test_refuses_other_families(self) -> None:
        assert find_best_match("claude-3-5-sonnet", ["gpt-4o", "claude-3-7-sonnet"]) is None

    def test_conflicting_functional_suffix_excludes_candidate(self) -> None:
        assert score_candidates("qwen-2.5-coder", ["qwen-2.5-vision"]) == []

    def test_one_sided_functional_suffix_is_penalized(self) -> None:
        match = find_best_match("qwen-2.5-72b", ["qwen-2.5-72b-instruct"])
        assert match is not None
        assert match.score == 70
        assert match.method == "version"

    def test_prefix_match(self) -> None:
        match = find_best_match("mystery-model", ["mystery-model-2"])
        assert match is not None
        assert match.score == 85
        assert match.method == "prefix"

    def test_empty_source(self) -> None:
        assert find_best_match("  ", ["gpt-4o"]) is None
        assert score_candidates("", ["gpt-4o"]) == []

    def test_result_never_below_floor(self) -> None:
        for match in (
            find_best_match("gpt-4o", ["gpt-4o-2024-08-06", "gpt-4-turbo"]),
            find_best_match("deepseek-chat", ["deepseek-chat-v3"]),
        ):
            assert match is None or match.score >= 60

    def test_every_returned_candidate_is_family_compatible(self) -> None:
        pool = ["gpt-4o", "gpt-4o-latest", "claude-3-opus", "gemini-pro", "llama-3.1-70b"]
        for source in ("gpt-4o-2024", "claude-3-opus-latest", "llama-3.1-8b"):
            for scored in score_candidates(source, pool):
                assert is_same_family(source, scored.name)


_SERIES = [(provider, series) for provider, rules in _FAMILY_RULES for _, series in rules]


def _decorated(name: str) -> list[str]:
    return [name, f"[x]{name}", f"{name}-官方", f"{name}-latest", name.upper()]


class TestCrossFamilyIsolation:
    """No matcher may return a model from another provider's family."""

    @pytest.mark.parametrize(("provider", "series"), _SERIES, ids=[series for _, series in _SERIES])
    def test_other_providers_never_match(self, provider: str, series: str) -> None:
        assert classify_family(series).provider == provider
        for other_provider, other_series in _SERIES:
            if other_provider == provider:
                continue
            pool = _decorated(other_series)
            for source in (series, f"[x]{series}"):
                for match in (find_best_match(source, pool), find_best_match_for_renamed(source, pool)):
                    assert match is None or is_same_family(source, match.name), (source, other_series, match)

    def test_same_family_affixes_still_match(self) -> None:
        match = find_best_match_for_renamed("claude-3-opus", _decorated("gpt-4o") + ["[x]claude-3-opus"])
        assert match is not None
        assert match.name == "[x]claude-3-opus"


class TestRenamedMatch:
    def test_provider_prefix(self) -> None:
        match = find_best_match_for_renamed("gpt-4o", ["gpt-4o-mini", "[反重力]gpt-4o"])
        assert match is not None
        assert match.name == "[反重力]gpt-4o"
        assert match.score == 95
        assert match.method == "provider-prefix"

    def test_provider_suffix(self) -> None:
        match = find_best_match_for_renamed("gpt-4o", ["gpt-4o-官方"])
        assert match is not None
        assert match.score == 93
        assert match.method == "provider-suffix"

    def test_exact_short_circuits(self) -> None:
        match = find_best_match_for_renamed("gpt-4o", ["[x]gpt-4o", "GPT-4O"])
        assert match is not None
        assert match.method == "exact"

    def test_functional_suffix_must_agree(self) -> None:
        assert find_best_match_for_renamed("qwen-2.5-coder", ["[x]qwen-2.5-vision"]) is None

    def test_nothing_related(self) -> None:
        assert find_best_match_for_renamed("gpt-4o", ["claude-3-opus", "gemini-pro"]) is None


class TestVersionUpgrade:
    def test_dashed_minor_upgrade(self) -> None:
        match = find_version_upgrade_match("claude-3-5-sonnet-20241022", ["claude-3-opus", "claude-3-7-sonnet"])
        assert match is not None
        assert match.name == "claude-3-7-sonnet"
        assert match.score == 88
        assert match.method == "version-upgrade"
        assert match.confidence == "medium"

    def test_major_upgrade(self) -> None:
        match = find_version_upgrade_match("gpt-4", ["gpt-4o", "gpt-5"])
        assert match is not None
        assert match.name == "gpt-5"
        assert match.score == 90
        assert match.confidence == "high"

    def test_picks_newest(self) -> None:
        match = find_version_upgrade_match("gpt-4.1", ["gpt-4.5", "gpt-4.2"])
        assert match is not None
        assert match.name == "gpt-4.5"

    def test_shared_variant_bonus_needs_a_variant(self) -> None:
        plain = find_version_upgrade_match("gpt-4.1", ["gpt-4.5"])
        tiered = find_version_upgrade_match("gpt-4.1-mini", ["gpt-4.5-mini"])
        assert plain is not None and tiered is not None
        assert plain.score == 85
        assert plain.confidence == "medium"
        assert tiered.score == 88

    def test_never_returns_older_or_equal(self) -> None:
        assert find_version_upgrade_match("gpt-5", ["gpt-4", "gpt-5"]) is None

    def test_variant_must_be_compatible(self) -> None:
        assert find_version_upgrade_match("gpt-4.1", ["gpt-4.5-mini"]) is None

    def test_require_same_suffix(self) -> None:
        match = find_version_upgrade_match("gpt-4-0613", ["gpt-5", "gpt-5-0613"], require_same_suffix=True)
        assert match is not None
        assert match.name == "gpt-5-0613"

    def test_unversioned_source(self) -> None:
        assert find_version_upgrade_match("deepseek-chat", ["deepseek-chat-v3"]) is None


class TestRankCandidates:
    def test_limit_is_clamped(self) -> None:
        pool = [f"gpt-4o-{index}" for index in range(30)]
        assert len(rank_candidates("gpt-4o", pool, limit=100)) == 20
        assert len(rank_candidates("gpt-4o", pool, limit=0)) == 1
        assert len(rank_candidates("gpt-4o", pool, limit="bogus")) == 8

    def test_sorted_and_unique(self) -> None:
        ranked = rank_candidates("gpt-4o", ["gpt-4o", "GPT-4o", "[x]gpt-4o", "gpt-4o-latest"])
        names = [candidate.name.lower() for candidate in ranked]
        assert len(names) == len(set(names))
        scores = [candidate.score for candidate in ranked]
        assert scores == sorted(scores, reverse=True)
        assert ranked[0].score == 100

    def test_includes_version_upgrade(self) -> None:
        ranked = rank_candidates("gpt-4", ["gpt-5"])
        assert ranked == [MatchCandidate("gpt-5", 90, "version-upgrade", "high")]

    def test_to_dict_drops_internal_stage(self) -> None:
        ranked = rank_candidates("gpt-4", ["gpt-5"])
        assert ranked[0].to_dict() == {
            "name": "gpt-5",
            "score": 90,
            "method": "version-upgrade",
            "confidence": "high",
        }


class TestHelpers:
    @pytest.mark.parametrize(("score", "level"), [(100, "high"), (90, "high"), (89, "medium"), (75, "medium"), (74, "low")])
    def test_confidence_levels(self, score: int, level: str) -> None:
        assert confidence_for(score) == level

    def test_is_downgrade(self) -> None:
        assert is_downgrade("gpt-4o", "gpt-4o-mini")
        assert is_downgrade("gpt-4.1", "GPT-4.1-nano")
        assert not is_downgrade("gpt-4o-mini", "gpt-4o")
        assert not is_downgrade("gpt-4o", "gpt-4o-latest")

    def test_levenshtein(self) -> None:
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3

    def test_char_set_similarity(self) -> None:
        assert char_set_similarity("abc", "ABC") == 1.0
        assert char_set_similarity("", "") == 0.0
