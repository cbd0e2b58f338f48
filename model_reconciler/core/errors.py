"""Error handling and user-facing error formatting.

This module handles all error-related functionality:
- ReconcilerError and its taxonomy (connectivity, auth, format, update, checkpoint)
- Error template rendering via ReconcilerError.to_markdown()
- Retry classification for HTTP statuses (with Retry-After support)
- Remediation hints for connectivity failures
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import socket
from typing import Any, Optional

import aiohttp

from .config import (
    DEFAULT_AUTHENTICATION_ERROR_TEMPLATE,
    DEFAULT_CONNECTIVITY_ERROR_TEMPLATE,
    DEFAULT_RECONCILER_ERROR_TEMPLATE,
)
from .utils import _render_error_template, _retry_after_seconds, _safe_json_loads

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Supporting Classes
# -----------------------------------------------------------------------------

class _RetryableHTTPStatusError(Exception):
    """Marks a provider response as retryable (5xx, 408, 425, 429)."""

    def __init__(self, status: int, url: str, retry_after: Optional[float] = None, body: str = ""):
        self.status = status
        self.url = url
        self.retry_after = retry_after
        self.body = body
        super().__init__(f"Retryable HTTP error ({status})")


class _RetryWait:
    """Tenacity wait strategy honoring Retry-After hints."""

    def __init__(self, base_wait):
        self._base_wait = base_wait

    def __call__(self, retry_state):
        base_delay = self._base_wait(retry_state) if self._base_wait else 0
        exc = None
        if retry_state.outcome is not None:
            exc = retry_state.outcome.exception()
        if isinstance(exc, _RetryableHTTPStatusError):
            retry_after = exc.retry_after
            if isinstance(retry_after, (int, float)) and retry_after > 0:
                return max(base_delay, retry_after)
        return base_delay


# -----------------------------------------------------------------------------
# Error Taxonomy
# -----------------------------------------------------------------------------

class ReconcilerError(RuntimeError):
    """Base error for failures surfaced to operators."""

    kind = "error"
    template = DEFAULT_RECONCILER_ERROR_TEMPLATE

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        url: Optional[str] = None,
        channel_id: Optional[Any] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.status = status
        self.url = url
        self.channel_id = channel_id
        self.suggestion = suggestion
        self.timestamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "status": self.status,
            "url": self.url,
            "channel_id": self.channel_id,
            "suggestion": self.suggestion,
        }

    def to_markdown(self, *, heading: Optional[str] = None, template: Optional[str] = None) -> str:
        """Return a user-friendly markdown block describing the failure."""
        values = {
            "heading": heading or self._default_heading(),
            "message": self.message,
            "status": self.status,
            "url": self.url,
            "channel_id": self.channel_id,
            "suggestion": self.suggestion,
            "timestamp": self.timestamp,
        }
        return _render_error_template(template or self.template, values)

    def _default_heading(self) -> str:
        return "Model reconciliation failed"


class ConnectivityError(ReconcilerError):
    """DNS failure, refused connection, timeout or persistent 5xx."""

    kind = "connectivity"
    template = DEFAULT_CONNECTIVITY_ERROR_TEMPLATE


class AuthError(ReconcilerError):
    """The provider rejected the credentials (401/403). Never retried."""

    kind = "auth"
    template = DEFAULT_AUTHENTICATION_ERROR_TEMPLATE


class UpstreamFormatError(ReconcilerError):
    """The provider answered with a payload that carries no usable data."""

    kind = "upstream_format"

    def _default_heading(self) -> str:
        return "Unexpected provider response"


class ChannelUpdateFailure(ReconcilerError):
    """A channel update was rejected; collected per channel."""

    kind = "channel_update"

    def _default_heading(self) -> str:
        return "Channel update failed"


class CheckpointError(ReconcilerError):
    """Checkpoint missing, expired, empty, or bound to another connection."""

    kind = "checkpoint"

    def _default_heading(self) -> str:
        return "Checkpoint operation refused"


class JobNotFoundError(LookupError):
    """Raised when a job id is unknown or has been swept."""


# -----------------------------------------------------------------------------
# Error Helper Functions
# -----------------------------------------------------------------------------

def _classify_retryable_http_error(
    status: int,
    headers: Optional[Any] = None,
) -> tuple[bool, Optional[float]]:
    """Return (is_retryable, retry_after_seconds) for an HTTP status."""
    if status >= 500 or status in {408, 425, 429}:
        retry_after = None
        if headers is not None:
            retry_after = _retry_after_seconds(headers.get("retry-after"))
        return True, retry_after
    return False, None


def _extract_error_message(body_text: Optional[str]) -> Optional[str]:
    """Pull the human message out of a provider error body."""
    parsed = _safe_json_loads(body_text) if body_text else None
    if isinstance(parsed, dict):
        for key in ("message", "error", "msg", "detail"):
            value = parsed.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if isinstance(value, str) and value.strip():
                return value.strip()
    if body_text:
        text = body_text.strip()
        return text[:300] if text else None
    return None


def connectivity_suggestion(exc: BaseException) -> str:
    """Map a transport failure to a remediation hint."""
    if isinstance(exc, asyncio.TimeoutError):
        return "The provider took too long to answer; check its load or raise HTTP_TIMEOUT_SECONDS."
    if isinstance(exc, aiohttp.ClientConnectorError):
        if isinstance(getattr(exc, "os_error", None), socket.gaierror):
            return "The host name could not be resolved; check BASE_URL for typos and DNS settings."
        return "The connection was refused; check BASE_URL and that the provider service is running."
    if isinstance(exc, _RetryableHTTPStatusError):
        return "The provider kept failing with server errors; retry later or check its logs."
    return "Check network connectivity to the provider."


def build_http_error(
    status: int,
    body_text: Optional[str],
    *,
    url: str,
    channel_id: Optional[Any] = None,
) -> ReconcilerError:
    """Translate a non-retryable HTTP status into the error taxonomy."""
    message = _extract_error_message(body_text) or f"HTTP {status}"
    if status in {401, 403}:
        return AuthError(
            message,
            status=status,
            url=url,
            channel_id=channel_id,
            suggestion="Regenerate the access token or confirm the user id header type.",
        )
    if status == 404:
        return ConnectivityError(
            message,
            status=status,
            url=url,
            channel_id=channel_id,
            suggestion="The endpoint does not exist; confirm BASE_URL points at the provider root, not an API sub-path.",
        )
    if status >= 500 or status in {408, 425, 429}:
        return ConnectivityError(
            message,
            status=status,
            url=url,
            channel_id=channel_id,
            suggestion="The provider kept failing; retry later.",
        )
    return UpstreamFormatError(message, status=status, url=url, channel_id=channel_id)
