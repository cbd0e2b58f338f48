"""Turning proposed fixes into a channel update.

``apply_fixes`` folds a list of ``MappingFix`` objects into one
``ChannelUpdate``. Two update modes exist:

- ``replace``: renamed aliases take the place of the old alias in the model
  list and the old alias's mapping entry is dropped
- ``append``: old aliases stay listed and the new aliases are added after them

Removals always drop both the alias and its mapping entry. When
``update_mapping`` is false the mapping is left untouched, so fixes that can
only be expressed through a mapping are skipped and renamed models are listed
under their upstream name instead.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Literal, Optional

from ..api.payloads import ChannelRecord, ChannelUpdate, serialize_mapping
from ..matching.classifier import parse_version, strip_model_prefix
from .results import FIX_BROKEN_TARGET, FIX_MAPPING_VERSION_UPGRADE, MappingFix

LOGGER = logging.getLogger(__name__)

UpdateMode = Literal["replace", "append"]

_TRAILING_BRACKETS_RE = re.compile(r"(?:\s*(?:\[[^\]]*\]|【[^】]*】|\([^)]*\)|（[^）]*）))+$")
_TRAILING_SEPARATORS = "-_@#/ "


# -----------------------------------------------------------------------------
# Alias rewriting
# -----------------------------------------------------------------------------

def normalize_actual_for_alias(name: str) -> str:
    """Upstream name with provider decorations removed, suitable as a caller-facing alias."""
    text = strip_model_prefix(name)
    text = _TRAILING_BRACKETS_RE.sub("", text).rstrip(_TRAILING_SEPARATORS)
    return text or (name or "").strip()


def _replace_ci(text: str, old: str, new: str) -> str:
    if not old:
        return text
    index = text.lower().find(old.lower())
    if index < 0:
        return text
    return text[:index] + new + text[index + len(old):]


def replace_version_in_name(name: str, old_version: str, new_version: str) -> str:
    """Replace the first occurrence of ``old_version`` (case-insensitive); unchanged if absent."""
    return _replace_ci(name, old_version, new_version)


def build_alias_for_actual_change(alias: str, original: str, new_actual: str) -> str:
    """Alias to use once ``alias`` stops pointing at ``original`` and points at ``new_actual``.

    An alias that merely repeated its old target follows the new upstream
    name. Otherwise version text embedded in the alias is bumped when both
    targets share a base, and failing that the old target's name inside the
    alias is swapped for the new one. When nothing applies the alias is kept.
    """
    if not alias or not new_actual:
        return alias
    normalized_new = normalize_actual_for_alias(new_actual)
    if original and alias.strip().lower() == original.strip().lower():
        return normalized_new

    old_info = parse_version(original) if original else None
    new_info = parse_version(new_actual)
    if old_info is not None and new_info is not None and old_info.base == new_info.base:
        updated = replace_version_in_name(alias, old_info.version_text, new_info.version_text)
        if updated == alias:
            updated = replace_version_in_name(
                alias,
                ".".join(str(part) for part in old_info.version_parts),
                ".".join(str(part) for part in new_info.version_parts),
            )
        if updated != alias:
            return updated

    if not original or normalized_new.lower() == original.strip().lower():
        return alias
    updated = _replace_ci(alias, original.strip(), normalized_new)
    if updated != alias:
        return updated
    stripped_original = strip_model_prefix(original)
    if stripped_original and stripped_original != original.strip():
        updated = _replace_ci(alias, stripped_original, normalized_new)
        if updated != alias:
            return updated
    return alias


# -----------------------------------------------------------------------------
# Fix application
# -----------------------------------------------------------------------------

def is_valid_fix(fix: MappingFix) -> bool:
    """Removals are always applicable; other fixes need a distinct upstream target."""
    if fix.is_removal:
        return True
    if not fix.actual_name:
        return False
    actual = fix.actual_name.lower()
    standard = (fix.standard_name or "").lower()
    if actual != standard or standard != (fix.source_alias or "").lower():
        return True
    return bool(fix.original_target) and actual != fix.original_target.lower()


def _set_mapping(mapping: dict[str, str], alias: str, target: str) -> None:
    for key in list(mapping):
        if key.lower() == alias.lower():
            mapping[key] = target
            return
    mapping[alias] = target


def _drop_mapping(mapping: dict[str, str], alias: str) -> None:
    for key in [key for key in mapping if key.lower() == alias.lower()]:
        mapping.pop(key, None)


def apply_fixes(
    channel: ChannelRecord,
    fixes: Iterable[MappingFix],
    *,
    update_mode: UpdateMode = "replace",
    update_mapping: bool = True,
) -> Optional[ChannelUpdate]:
    """Build the update for ``channel``; returns None when nothing would change."""
    valid = [fix for fix in fixes if is_valid_fix(fix)]
    if not valid:
        return None

    current_models = channel.selected_models
    original_mapping = channel.mapping
    mapping = dict(original_mapping)

    replacements: dict[str, str] = {}
    removals: set[str] = set()
    additions: list[str] = []
    mapping_removals: list[str] = []
    mapping_sets: list[tuple[str, str]] = []

    for fix in valid:
        source = (fix.source_alias or fix.standard_name or "").strip()
        if not source:
            continue
        if fix.is_removal:
            removals.add(source.lower())
            mapping_removals.append(source)
            continue

        target = fix.actual_name or ""
        new_alias = (fix.standard_name or source).strip()
        alias_changed = new_alias.lower() != source.lower()

        if not update_mapping:
            # Without a mapping the listed name must be directly callable upstream.
            if fix.original_target:
                LOGGER.debug("Skipping %s for %s: needs a mapping update", fix.fix_type, source)
                continue
            if update_mode == "append":
                additions.append(target)
            else:
                replacements[source.lower()] = target
            continue

        if fix.fix_type == FIX_BROKEN_TARGET or not alias_changed:
            if new_alias.lower() == target.lower():
                mapping_removals.append(source)
            else:
                mapping_sets.append((source, target))
            continue

        if update_mode == "append":
            if fix.original_target and fix.fix_type != FIX_MAPPING_VERSION_UPGRADE:
                mapping_sets.append((source, target))
            additions.append(new_alias)
        else:
            replacements[source.lower()] = new_alias
            mapping_removals.append(source)
        if new_alias.lower() != target.lower():
            mapping_sets.append((new_alias, target))

    for alias in mapping_removals:
        _drop_mapping(mapping, alias)
    for alias, target in mapping_sets:
        _set_mapping(mapping, alias, target)

    models: list[str] = []
    seen: set[str] = set()
    for name in [*current_models, *additions]:
        lowered = name.lower()
        if lowered in removals:
            continue
        if lowered in replacements:
            name = replacements[lowered]
            lowered = name.lower()
            if lowered in removals:
                continue
        if lowered in seen:
            continue
        seen.add(lowered)
        models.append(name)

    models_changed = models != current_models
    mapping_changed = update_mapping and mapping != original_mapping
    if not models_changed and not mapping_changed:
        return None

    update = ChannelUpdate(channel_id=channel.id)
    if models_changed:
        update.models = ",".join(models) if models else None
    if mapping_changed:
        update.model_mapping = serialize_mapping(mapping)
    LOGGER.info(
        "Channel %s: %d fix(es) -> %d model(s), %d mapping entr%s",
        channel.id,
        len(valid),
        len(models),
        len(mapping),
        "y" if len(mapping) == 1 else "ies",
    )
    return update
