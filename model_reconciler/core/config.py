"""Configuration management for the model reconciler.

This module contains the configuration schemas and shared constants:
- Valves: Connection, concurrency, TTL and cache settings
- Error template constants used by ReconcilerError.to_markdown()
- Matching thresholds shared by the matcher and the analyzer
"""

from __future__ import annotations

import logging
import os
from typing import Literal

from pydantic import BaseModel, Field

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_ENV_PREFIX = "MODEL_RECONCILER_"

MIN_MATCH_SCORE = 60
RENAME_ACCEPT_SCORE = 70
DEFAULT_RANK_LIMIT = 8
MAX_RANK_LIMIT = 20
MAX_JOB_CONCURRENCY = 10
DEFAULT_TEST_MODEL = "gpt-3.5-turbo"

AUTH_USER_HEADERS = {
    "NEW-API": "New-Api-User",
    "VELOERA": "Veloera-User",
}


def _env(name: str, default: str = "") -> str:
    return (os.getenv(f"{_ENV_PREFIX}{name}") or "").strip() or default


# -----------------------------------------------------------------------------
# Error Templates
# -----------------------------------------------------------------------------

DEFAULT_RECONCILER_ERROR_TEMPLATE = (
    "{{#if heading}}\n"
    "### 🚫 {heading}\n\n"
    "{{/if}}\n"
    "{{#if message}}\n"
    "- **Error**: `{message}`\n"
    "{{/if}}\n"
    "{{#if status}}\n"
    "- **HTTP status**: `{status}`\n"
    "{{/if}}\n"
    "{{#if channel_id}}\n"
    "- **Channel**: `{channel_id}`\n"
    "{{/if}}\n"
    "{{#if url}}\n"
    "- **Endpoint**: `{url}`\n"
    "{{/if}}\n"
    "{{#if timestamp}}\n"
    "- **Time**: {timestamp}\n"
    "{{/if}}\n"
    "{{#if suggestion}}\n\n"
    "**What to do:** {suggestion}\n"
    "{{/if}}\n"
)

DEFAULT_CONNECTIVITY_ERROR_TEMPLATE = (
    "### 🔌 Connection Failed\n\n"
    "Unable to reach the channel provider.\n\n"
    "{{#if url}}\n"
    "**Endpoint:** `{url}`\n"
    "{{/if}}\n"
    "{{#if message}}\n"
    "**Error:** `{message}`\n"
    "{{/if}}\n"
    "{{#if timestamp}}\n"
    "**Time:** {timestamp}\n"
    "{{/if}}\n\n"
    "{{#if suggestion}}\n"
    "**What to do:** {suggestion}\n"
    "{{/if}}\n"
)

DEFAULT_AUTHENTICATION_ERROR_TEMPLATE = (
    "### 🔐 Authentication Failed\n\n"
    "The channel provider rejected the configured credentials.\n\n"
    "{{#if status}}\n"
    "**HTTP status:** `{status}`\n"
    "{{/if}}\n"
    "{{#if message}}\n"
    "**Error:** `{message}`\n"
    "{{/if}}\n\n"
    "**What to do:**\n"
    "- Check the access token and that it has administrator rights\n"
    "- Check the user id matches the token owner\n"
    "{{#if suggestion}}\n"
    "- {suggestion}\n"
    "{{/if}}\n"
)


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------

class Valves(BaseModel):
    """Global configuration shared by the client, caches and job runners."""

    # Connection & Auth
    BASE_URL: str = Field(
        default=_env("BASE_URL"),
        description="Base URL of the channel provider (e.g. https://newapi.example.com).",
    )
    ACCESS_TOKEN: str = Field(
        default=_env("ACCESS_TOKEN"),
        description="Administrator access token sent as a Bearer credential.",
    )
    USER_ID: str = Field(
        default=_env("USER_ID"),
        description="Account id sent alongside the token in the user header.",
    )
    AUTH_HEADER_TYPE: Literal["NEW-API", "VELOERA"] = Field(
        default="NEW-API",
        description="Which user-id header the provider expects (New-Api-User or Veloera-User).",
    )

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        ge=1,
        le=600,
        description="Total timeout for a single provider request.",
    )
    HTTP_RETRY_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per request for connection errors and retryable HTTP statuses.",
    )
    HTTP_RETRY_BASE_SECONDS: float = Field(
        default=1.0,
        ge=0,
        le=30,
        description="Base delay for exponential backoff between attempts.",
    )
    CHANNEL_PAGE_SIZE: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Page size used when listing channels.",
    )
    BREAKER_THRESHOLD: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Connectivity failures within the window before calls fail fast.",
    )
    BREAKER_WINDOW_SECONDS: float = Field(
        default=60.0,
        ge=1,
        le=3600,
        description="Sliding window for counting connectivity failures.",
    )
    AUTH_FAILURE_TTL_SECONDS: float = Field(
        default=60.0,
        ge=0,
        le=3600,
        description="How long an authentication failure short-circuits later calls to the same connection.",
    )

    # Jobs
    JOB_CONCURRENCY: int = Field(
        default=4,
        ge=1,
        le=MAX_JOB_CONCURRENCY,
        description="Default number of channels processed concurrently by a job.",
    )
    JOB_TTL_SECONDS: float = Field(
        default=30 * 60,
        ge=1,
        description="How long finished jobs remain queryable.",
    )
    JOB_MAX_LOG_LINES: int = Field(
        default=2000,
        ge=10,
        le=200000,
        description="Log entries retained per job; oldest entries are dropped beyond this.",
    )

    # Checkpoints
    CHECKPOINT_CONCURRENCY: int = Field(
        default=6,
        ge=1,
        le=MAX_JOB_CONCURRENCY,
        description="Concurrent channel fetches/updates while creating or restoring a checkpoint.",
    )
    CHECKPOINT_TTL_SECONDS: float = Field(
        default=2 * 60 * 60,
        ge=1,
        description="How long a checkpoint can be restored.",
    )
    CHECKPOINT_MAX_COUNT: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Maximum checkpoints retained; the oldest are evicted first.",
    )

    # Caches
    MODEL_CACHE_TTL_SECONDS: float = Field(
        default=5 * 60,
        ge=0,
        description="TTL for a channel's upstream model list.",
    )
    MODEL_CACHE_MAX_ENTRIES: int = Field(
        default=500,
        ge=1,
        description="Maximum cached upstream model lists.",
    )
    REQUEST_CACHE_TTL_SECONDS: float = Field(
        default=5 * 60,
        ge=0,
        description="TTL for memoized GET responses on one connection.",
    )
    REQUEST_CACHE_MAX_ENTRIES: int = Field(
        default=100,
        ge=5,
        description="Entries kept per connection before least-used eviction kicks in.",
    )

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default=(_env("LOG_LEVEL", "INFO").upper()),  # type: ignore[arg-type]
        description="Minimum level recorded into job log buffers.",
    )

    @property
    def user_header(self) -> str:
        return AUTH_USER_HEADERS.get(self.AUTH_HEADER_TYPE, "New-Api-User")

    @property
    def normalized_base_url(self) -> str:
        return (self.BASE_URL or "").strip().rstrip("/")
