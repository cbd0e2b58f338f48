"""Utility functions and helpers.

This module contains pure helpers shared across the package:
- Template rendering (_render_error_template, etc.)
- JSON helpers (_safe_json_loads)
- Type coercion (_coerce_positive_int, _clamp_int)
- Model list parsing and token hashing

These utilities have minimal dependencies and can be used by any module.
"""

from __future__ import annotations

import datetime
import email.utils
import hashlib
import json
import re
from typing import Any, Iterable, Optional

from .config import DEFAULT_RECONCILER_ERROR_TEMPLATE

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_TEMPLATE_IF_TOKEN_RE = re.compile(r"\{\{\s*(#if\s+(\w+)|/if)\s*\}\}")
_MODEL_LIST_SPLIT_RE = re.compile(r"[\n\r,，;；]+")

# -----------------------------------------------------------------------------
# Template Rendering
# -----------------------------------------------------------------------------

def _template_value_present(value: Any) -> bool:
    """Return True when a template value should count as "present"."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return bool(value)
    return True


def _render_error_template(template: str, values: dict[str, Any]) -> str:
    """Render an error template, honoring {{#if}} conditionals.

    Lines whose placeholders resolve to empty values are dropped so optional
    details never leave dangling labels behind.
    """
    if not template:
        template = DEFAULT_RECONCILER_ERROR_TEMPLATE

    rendered_lines: list[str] = []
    condition_stack: list[bool] = []

    def _conditions_active() -> bool:
        return all(condition_stack) if condition_stack else True

    for raw_line in template.splitlines():
        last_index = 0
        line_parts: list[str] = []

        for match in _TEMPLATE_IF_TOKEN_RE.finditer(raw_line):
            segment = raw_line[last_index:match.start()]
            if segment and _conditions_active():
                line_parts.append(segment)

            token = match.group(1) or ""
            var_name = match.group(2)
            if token.startswith("#if"):
                condition_stack.append(_template_value_present(values.get(var_name or "")))
            elif condition_stack:
                condition_stack.pop()

            last_index = match.end()

        tail_segment = raw_line[last_index:]
        if tail_segment and _conditions_active():
            line_parts.append(tail_segment)

        if not line_parts:
            if raw_line.strip():
                continue
            if not _conditions_active():
                continue
            rendered_lines.append("")
            continue

        line = "".join(line_parts)

        drop_line = False
        for name, value in values.items():
            placeholder = f"{{{name}}}"
            if placeholder in line:
                if not _template_value_present(value):
                    drop_line = True
                line = line.replace(placeholder, "" if value is None else str(value))
        if drop_line:
            continue
        rendered_lines.append(line)
    return "\n".join(rendered_lines).strip()


# -----------------------------------------------------------------------------
# JSON Helpers
# -----------------------------------------------------------------------------

def _safe_json_loads(payload: Optional[str]) -> Any:
    """Return parsed JSON or None without raising."""
    if not payload:
        return None
    try:
        return json.loads(payload)
    except (TypeError, ValueError):
        return None


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Convert a Retry-After header value into seconds."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        return max(0.0, float(trimmed))
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(trimmed)
        if dt is None:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        now = datetime.datetime.now(datetime.timezone.utc)
        return max(0.0, (dt - now).total_seconds())
    except (TypeError, ValueError, OverflowError):
        return None


# -----------------------------------------------------------------------------
# Type Coercion and String Normalization
# -----------------------------------------------------------------------------

def _normalize_optional_str(value: Any) -> Optional[str]:
    """Return a stripped string or None for empty/non-string input."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    text = value.strip()
    return text or None


def _coerce_positive_int(value: Any) -> Optional[int]:
    """Convert strings/numbers into positive integers."""
    if value is None or isinstance(value, bool):
        return None
    try:
        coerced = int(value)
    except (TypeError, ValueError):
        return None
    return coerced if coerced > 0 else None


def _clamp_int(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    """Coerce ``value`` to int and clamp it into [minimum, maximum]."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, number))


# -----------------------------------------------------------------------------
# Model Lists
# -----------------------------------------------------------------------------

def _dedupe_names(names: Iterable[Any]) -> list[str]:
    """Trim, drop empties and de-duplicate while preserving order."""
    seen: set[str] = set()
    result: list[str] = []
    for entry in names:
        text = _normalize_optional_str(entry)
        if not text or text in seen:
            continue
        seen.add(text)
        result.append(text)
    return result


def split_model_list(value: Any) -> list[str]:
    """Parse a delimiter-tolerant model list (commas, semicolons, newlines, full-width variants)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return _dedupe_names(value)
    return _dedupe_names(_MODEL_LIST_SPLIT_RE.split(str(value)))


def hash_token(token: Optional[str], *, length: int = 12) -> str:
    """Return a short sha256 digest so credentials never appear in cache keys."""
    if not token:
        return "anonymous"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:length]
