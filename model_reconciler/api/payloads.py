"""Channel payload types.

``ChannelRecord`` is the in-memory snapshot of a provider channel. The
provider only supports full-record replacement, so updates are expressed as a
``ChannelUpdate`` whose optional fields are tri-state:

- ``KEEP``: copy the value from the base record (default)
- ``OMIT``: leave the field out of the payload entirely
- any other value, including ``None``: send it as-is (``None`` becomes null)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Optional

from ..core.utils import _safe_json_loads, split_model_list

LOGGER = logging.getLogger(__name__)


class _Sentinel:
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False


KEEP: Any = _Sentinel("KEEP")
OMIT: Any = _Sentinel("OMIT")


def parse_model_mapping(value: Any, *, channel_id: Any = None) -> dict[str, str]:
    """Parse a mapping stored as JSON text or a dict; invalid input yields an empty mapping."""
    if value is None or value == "":
        return {}
    parsed = value
    if isinstance(value, str):
        parsed = _safe_json_loads(value)
        if parsed is None:
            LOGGER.warning("Channel %s has an unparseable model_mapping; treating it as empty", channel_id)
            return {}
    if not isinstance(parsed, dict):
        LOGGER.warning("Channel %s model_mapping is not an object; treating it as empty", channel_id)
        return {}
    mapping: dict[str, str] = {}
    for alias, target in parsed.items():
        alias_text = str(alias).strip()
        if not alias_text or target is None:
            continue
        target_text = str(target).strip()
        if target_text:
            mapping[alias_text] = target_text
    return mapping


@dataclass(slots=True)
class ChannelRecord:
    id: Any
    name: str = ""
    status: int = 1
    models: str = ""
    model_mapping: Any = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ChannelRecord":
        status = data.get("status", 1)
        try:
            status = int(status)
        except (TypeError, ValueError):
            status = 0
        models = data.get("models") or ""
        if isinstance(models, list):
            models = ",".join(str(item) for item in models)
        return cls(
            id=data.get("id"),
            name=str(data.get("name") or ""),
            status=status,
            models=str(models),
            model_mapping=data.get("model_mapping") or "",
            raw=dict(data),
        )

    @property
    def is_enabled(self) -> bool:
        return self.status == 1

    @property
    def selected_models(self) -> list[str]:
        return split_model_list(self.models)

    @property
    def mapping(self) -> dict[str, str]:
        return parse_model_mapping(self.model_mapping, channel_id=self.id)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.raw)
        data.update(
            {
                "id": self.id,
                "name": self.name,
                "status": self.status,
                "models": self.models,
                "model_mapping": self.model_mapping,
            }
        )
        return data


@dataclass(slots=True)
class ChannelUpdate:
    """Full-record update with explicit keep/omit/null semantics per field."""

    channel_id: Any
    name: Any = KEEP
    models: Any = KEEP
    model_mapping: Any = KEEP
    status: Any = KEEP
    type: Any = KEEP
    test_model: Any = KEEP
    base_url: Any = KEEP
    key: Any = KEEP
    weight: Any = KEEP
    priority: Any = KEEP
    auto_ban: Any = KEEP
    tag: Any = KEEP
    group: Any = KEEP

    def to_payload(self, base: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Merge onto ``base`` (the channel as last read) and return the request body."""
        payload: dict[str, Any] = dict(base or {})
        payload["id"] = self.channel_id
        for item in fields(self):
            if item.name == "channel_id":
                continue
            value = getattr(self, item.name)
            if value is KEEP:
                continue
            if value is OMIT:
                payload.pop(item.name, None)
                continue
            payload[item.name] = value
        return payload

    def changed_fields(self) -> list[str]:
        return [
            item.name
            for item in fields(self)
            if item.name != "channel_id" and getattr(self, item.name) is not KEEP
        ]


def serialize_mapping(mapping: dict[str, str]) -> str:
    return json.dumps(mapping, ensure_ascii=False)
