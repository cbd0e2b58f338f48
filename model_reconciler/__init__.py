"""Model reconciler for New API / Veloera style channel providers.

This package detects channel model aliases whose upstream models were renamed,
upgraded or withdrawn, and proposes (or applies) the repairs:
- Matching: name classification, affix stripping, fuzzy and rule matching
- Reconciliation: per-channel analysis and fix application
- Jobs: batch orchestration, job registry and checkpoints
- Service: ReconcilerService facade tying one provider connection together

Attributes are loaded lazily via ``__getattr__`` so importing the package
does not pull in aiohttp until a client is actually needed.
"""

from typing import TYPE_CHECKING

try:
    from importlib.metadata import PackageNotFoundError, version as _get_version
    __version__ = _get_version("model-reconciler")
except PackageNotFoundError:
    __version__ = "1.0.0"

if TYPE_CHECKING:
    from .api.client import ChannelProvider, ChannelProviderClient
    from .api.payloads import KEEP, OMIT, ChannelRecord, ChannelUpdate
    from .core.config import Valves
    from .core.errors import (
        AuthError,
        ChannelUpdateFailure,
        CheckpointError,
        ConnectivityError,
        JobNotFoundError,
        ReconcilerError,
        UpstreamFormatError,
    )
    from .jobs.options import JobOptions
    from .matching.matcher import (
        MatchCandidate,
        find_best_match,
        find_best_match_for_renamed,
        find_version_upgrade_match,
        rank_candidates,
    )
    from .matching.rules import CustomRule, NameMatchRule, RuleSet
    from .reconcile.results import AnalysisResult, BrokenMapping, MappingFix
    from .service import ReconcilerService


_LAZY_IMPORTS = {
    "ChannelProvider": (".api.client", "ChannelProvider"),
    "ChannelProviderClient": (".api.client", "ChannelProviderClient"),
    "KEEP": (".api.payloads", "KEEP"),
    "OMIT": (".api.payloads", "OMIT"),
    "ChannelRecord": (".api.payloads", "ChannelRecord"),
    "ChannelUpdate": (".api.payloads", "ChannelUpdate"),
    "Valves": (".core.config", "Valves"),
    "ReconcilerError": (".core.errors", "ReconcilerError"),
    "ConnectivityError": (".core.errors", "ConnectivityError"),
    "AuthError": (".core.errors", "AuthError"),
    "UpstreamFormatError": (".core.errors", "UpstreamFormatError"),
    "ChannelUpdateFailure": (".core.errors", "ChannelUpdateFailure"),
    "CheckpointError": (".core.errors", "CheckpointError"),
    "JobNotFoundError": (".core.errors", "JobNotFoundError"),
    "JobOptions": (".jobs.options", "JobOptions"),
    "MatchCandidate": (".matching.matcher", "MatchCandidate"),
    "find_best_match": (".matching.matcher", "find_best_match"),
    "find_best_match_for_renamed": (".matching.matcher", "find_best_match_for_renamed"),
    "find_version_upgrade_match": (".matching.matcher", "find_version_upgrade_match"),
    "rank_candidates": (".matching.matcher", "rank_candidates"),
    "CustomRule": (".matching.rules", "CustomRule"),
    "NameMatchRule": (".matching.rules", "NameMatchRule"),
    "RuleSet": (".matching.rules", "RuleSet"),
    "AnalysisResult": (".reconcile.results", "AnalysisResult"),
    "BrokenMapping": (".reconcile.results", "BrokenMapping"),
    "MappingFix": (".reconcile.results", "MappingFix"),
    "ReconcilerService": (".service", "ReconcilerService"),
}

__all__ = ["__version__", *_LAZY_IMPORTS]


def __getattr__(name: str):
    """Lazy-load public attributes on first access."""
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        import importlib
        module = importlib.import_module(module_path, __name__)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(__all__)
