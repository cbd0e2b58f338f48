"""Analysis result types.

Results are frozen once returned; the orchestrator stores them on the job and
execute-from-preview replays them without re-analysing the channel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

FixAction = Literal["add", "update", "delete"]
UpstreamSource = Literal["fetch_models", "channel_models", "cache", "degraded", "none"]

FIX_BROKEN_TARGET = "broken-mapping-target"
FIX_MAPPING_UPGRADE = "mapping-upgrade"
FIX_MAPPING_VERSION_UPGRADE = "mapping-version-upgrade"
FIX_MISSING_MODEL = "missing-model"
FIX_MODEL_UPGRADE = "model-upgrade"
FIX_REMOVE_INVALID = "remove-invalid"
FIX_DEGRADED_PATTERN = "degraded-mode-pattern"

FIX_TYPES = (
    FIX_BROKEN_TARGET,
    FIX_MAPPING_UPGRADE,
    FIX_MAPPING_VERSION_UPGRADE,
    FIX_MISSING_MODEL,
    FIX_MODEL_UPGRADE,
    FIX_REMOVE_INVALID,
    FIX_DEGRADED_PATTERN,
)


@dataclass(frozen=True, slots=True)
class BrokenMapping:
    """An alias whose mapping target (or the alias itself) is not offered upstream."""

    alias: str
    expected_target: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"alias": self.alias, "expected_target": self.expected_target, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class MappingFix:
    """One proposed change to a channel's alias list or mapping.

    ``source_alias`` is the name currently listed on the channel;
    ``standard_name`` is the alias callers should use afterwards and
    ``actual_name`` the upstream model it resolves to (``None`` for removals).
    ``original_target`` is the mapping target being replaced, when there was one.
    """

    source_alias: str
    standard_name: str
    actual_name: Optional[str]
    fix_type: str
    method: str
    score: int
    confidence: str
    action: FixAction = "update"
    original_target: Optional[str] = None
    candidates: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @property
    def is_removal(self) -> bool:
        return self.action == "delete" or self.fix_type == FIX_REMOVE_INVALID

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_alias": self.source_alias,
            "standard_name": self.standard_name,
            "actual_name": self.actual_name,
            "original_target": self.original_target,
            "fix_type": self.fix_type,
            "method": self.method,
            "score": self.score,
            "confidence": self.confidence,
            "action": self.action,
            "candidates": [dict(candidate) for candidate in self.candidates],
        }


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    channel_id: Any
    channel_name: str = ""
    has_changes: bool = False
    broken_mappings: tuple[BrokenMapping, ...] = field(default_factory=tuple)
    new_mappings: tuple[MappingFix, ...] = field(default_factory=tuple)
    current_models: tuple[str, ...] = field(default_factory=tuple)
    selected_models: tuple[str, ...] = field(default_factory=tuple)
    upstream_source: UpstreamSource = "none"
    degraded: bool = False
    verified: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "has_changes": self.has_changes,
            "broken_mappings": [item.to_dict() for item in self.broken_mappings],
            "new_mappings": [item.to_dict() for item in self.new_mappings],
            "current_models": list(self.current_models),
            "selected_models": list(self.selected_models),
            "upstream_source": self.upstream_source,
            "degraded": self.degraded,
            "verified": self.verified,
        }
