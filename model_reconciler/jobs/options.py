"""Job request options."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.config import MAX_JOB_CONCURRENCY
from ..core.utils import _clamp_int
from ..matching.rules import RuleSet

JobMode = Literal["preview", "execute"]


class JobOptions(BaseModel):
    """What a batch job should do and how wide it may fan out."""

    channel_ids: Optional[list[Any]] = Field(
        default=None,
        description="Channels to process; None means every channel.",
    )
    mode: JobMode = "preview"
    concurrency: Optional[int] = Field(
        default=None,
        description="Channels processed at once (clamped to 1-10); None uses JOB_CONCURRENCY.",
    )
    include_upgrades: bool = False
    only_enabled: bool = True
    update_mode: Literal["replace", "append"] = "replace"
    update_mapping: bool = True
    rules: RuleSet = Field(default_factory=RuleSet)
    force_refresh: bool = False
    source_job_id: Optional[str] = Field(
        default=None,
        description="Completed preview job whose analyses an execute job applies.",
    )
    selected_fixes: Optional[dict[str, list[str]]] = Field(
        default=None,
        description="channel_id -> standard names to apply; None applies every valid fix.",
    )

    @field_validator("concurrency", mode="before")
    @classmethod
    def _clamp_concurrency(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return _clamp_int(value, default=1, minimum=1, maximum=MAX_JOB_CONCURRENCY)

    @field_validator("channel_ids", mode="before")
    @classmethod
    def _coerce_channel_ids(cls, value: Any) -> Any:
        if value is None or value == "" or value == "all":
            return None
        if isinstance(value, (str, int)):
            return [value]
        return list(value)

    @field_validator("selected_fixes", mode="before")
    @classmethod
    def _coerce_selected_fixes(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ValueError("selected_fixes must map channel ids to lists of model names.")
        return {str(key): [str(name) for name in (names or [])] for key, names in value.items()}

    def resolved_concurrency(self, default: int) -> int:
        value = self.concurrency if self.concurrency is not None else default
        return _clamp_int(value, default=1, minimum=1, maximum=MAX_JOB_CONCURRENCY)
