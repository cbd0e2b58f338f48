"""Upstream model-list response shapes.

Providers answer the model-listing endpoints with many JSON layouts. Each
matcher below recognizes exactly one layout and returns ``(matched, names)``;
``extract_model_names`` tries them in order and stops at the first match.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Optional

from ..core.errors import UpstreamFormatError
from ..core.utils import _dedupe_names, _normalize_optional_str

ShapeMatcher = Callable[[Any], "tuple[bool, list[str]]"]

_MODEL_STRING_SPLIT_RE = re.compile(r"[,|;\n]+")
_ITEM_NAME_KEYS = ("id", "model", "name", "value")


def _item_name(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return _normalize_optional_str(item)
    if isinstance(item, dict):
        for key in _ITEM_NAME_KEYS:
            text = _normalize_optional_str(item.get(key)) if isinstance(item.get(key), (str, int)) else None
            if text:
                return text
    return None


def normalize_model_items(items: Iterable[Any]) -> list[str]:
    """Turn strings or ``{id|model|name|value}`` objects into a clean, de-duplicated list."""
    return _dedupe_names(name for name in (_item_name(item) for item in items) if name)


def _match_success_envelope(payload: Any) -> tuple[bool, list[str]]:
    if isinstance(payload, dict) and "success" in payload and isinstance(payload.get("data"), list):
        return True, normalize_model_items(payload["data"])
    return False, []


def _match_nested_envelope(payload: Any) -> tuple[bool, list[str]]:
    if not isinstance(payload, dict) or not payload.get("success") or not isinstance(payload.get("data"), dict):
        return False, []
    return _match_models_field(payload["data"]) if "models" in payload["data"] else _match_items_list(payload["data"])


def _match_bare_list(payload: Any) -> tuple[bool, list[str]]:
    if isinstance(payload, list):
        return True, normalize_model_items(payload)
    return False, []


def _match_data_list(payload: Any) -> tuple[bool, list[str]]:
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return True, normalize_model_items(payload["data"])
    return False, []


def _match_models_field(payload: Any) -> tuple[bool, list[str]]:
    if not isinstance(payload, dict) or "models" not in payload:
        return False, []
    models = payload["models"]
    if isinstance(models, list):
        return True, normalize_model_items(models)
    if isinstance(models, str):
        return True, _dedupe_names(_MODEL_STRING_SPLIT_RE.split(models))
    return False, []


def _match_items_list(payload: Any) -> tuple[bool, list[str]]:
    if not isinstance(payload, dict):
        return False, []
    for key in ("items", "list"):
        if isinstance(payload.get(key), list):
            return True, normalize_model_items(payload[key])
    return False, []


def _match_result_list(payload: Any) -> tuple[bool, list[str]]:
    if isinstance(payload, dict) and isinstance(payload.get("result"), list):
        return True, normalize_model_items(payload["result"])
    return False, []


def _match_first_array_field(payload: Any) -> tuple[bool, list[str]]:
    if not isinstance(payload, dict):
        return False, []
    for value in payload.values():
        if isinstance(value, list) and value:
            names = normalize_model_items(value)
            if names:
                return True, names
    return False, []


SHAPE_MATCHERS: tuple[ShapeMatcher, ...] = (
    _match_success_envelope,
    _match_nested_envelope,
    _match_bare_list,
    _match_data_list,
    _match_models_field,
    _match_items_list,
    _match_result_list,
    _match_first_array_field,
)


def extract_model_names(payload: Any, *, url: Optional[str] = None, channel_id: Any = None) -> list[str]:
    """Normalize a model-listing payload.

    Raises:
        UpstreamFormatError: When the provider reports ``success: false`` or
            no matcher recognizes the payload.
    """
    if isinstance(payload, dict) and payload.get("success") is False:
        message = _normalize_optional_str(payload.get("message")) or "provider reported failure"
        raise UpstreamFormatError(message, url=url, channel_id=channel_id)
    for matcher in SHAPE_MATCHERS:
        matched, names = matcher(payload)
        if matched:
            return names
    raise UpstreamFormatError("Unrecognized model list response", url=url, channel_id=channel_id)
