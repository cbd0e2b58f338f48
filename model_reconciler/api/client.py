"""Channel provider HTTP client.

``ChannelProviderClient`` talks to a New API / Veloera style admin API:

- ``list_channels`` / ``list_all_channels``: paginated channel listing
- ``get_channel_detail``: full channel record
- ``update_channel``: full-record replacement (``PUT /api/channel/``)
- ``fetch_upstream_models``: the authoritative upstream model list
- ``list_channel_models``: generic channel / global model listings

Requests retry connection errors and retryable statuses with exponential
backoff (tenacity). Authentication failures are never retried and make later
calls on the same connection fail fast for a short TTL. Idempotent GETs are
memoized in a per-connection ``RequestCache``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.circuit_breaker import CircuitBreaker
from ..core.config import Valves
from ..core.errors import (
    AuthError,
    ChannelUpdateFailure,
    ConnectivityError,
    ReconcilerError,
    UpstreamFormatError,
    _classify_retryable_http_error,
    _RetryableHTTPStatusError,
    _RetryWait,
    build_http_error,
    connectivity_suggestion,
)
from ..core.utils import _coerce_positive_int, _normalize_optional_str, _safe_json_loads
from ..models.request_cache import RequestCache
from ..models.shapes import extract_model_names
from .payloads import ChannelRecord, ChannelUpdate

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_CHANNEL_LIST_PATH = "/api/channel/"
_CHANNEL_ITEM_KEYS = ("items", "data", "list", "channels", "result")
_CHANNEL_MODEL_PATHS = ("/api/channel/models/{channel_id}",)
_GLOBAL_MODEL_PATHS = ("/api/models", "/api/model/list", "/api/models/list")


class ChannelProvider(Protocol):
    """Operations the reconciler needs from a channel provider."""

    @property
    def base_url(self) -> str: ...

    @property
    def user_id(self) -> str: ...

    async def list_channels(self, page: int, page_size: int) -> tuple[list[ChannelRecord], int]: ...

    async def list_all_channels(self) -> list[ChannelRecord]: ...

    async def get_channel_detail(self, channel_id: Any) -> ChannelRecord: ...

    async def update_channel(self, update: ChannelUpdate, base: Optional[dict[str, Any]] = None) -> None: ...

    async def fetch_upstream_models(self, channel_id: Any) -> list[str]: ...

    async def list_channel_models(self, channel_id: Any) -> list[str]: ...


def _parse_channel_page(payload: Any) -> tuple[Optional[list[dict[str, Any]]], int, Optional[int]]:
    """Return ``(items, total, reported_page)``; items is None when the shape is unknown."""
    if isinstance(payload, dict) and payload.get("success") is False:
        message = _normalize_optional_str(payload.get("message")) or "channel listing failed"
        raise UpstreamFormatError(message, url=_CHANNEL_LIST_PATH)
    if isinstance(payload, list):
        return payload, len(payload), None

    containers: list[dict[str, Any]] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict):
            containers.append(data)
        containers.append(payload)

    for container in containers:
        reported_page = _coerce_positive_int(
            container.get("page") or container.get("p") or container.get("current_page")
        )
        for key in _CHANNEL_ITEM_KEYS:
            items = container.get(key)
            if isinstance(items, list):
                total = _coerce_positive_int(container.get("total")) or len(items)
                return items, total, reported_page
    for container in containers:
        for value in container.values():
            if isinstance(value, list):
                total = _coerce_positive_int(container.get("total")) or len(value)
                return value, total, None
    return None, 0, None


class ChannelProviderClient:
    """Async client for the channel provider admin API."""

    def __init__(
        self,
        valves: Valves,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.valves = valves
        self.logger = LOGGER
        self._session = session
        self._owns_session = session is None
        self._breaker = breaker or CircuitBreaker(
            threshold=valves.BREAKER_THRESHOLD,
            window_seconds=valves.BREAKER_WINDOW_SECONDS,
        )
        self.request_cache = RequestCache(
            ttl_seconds=valves.REQUEST_CACHE_TTL_SECONDS,
            max_entries=valves.REQUEST_CACHE_MAX_ENTRIES,
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def base_url(self) -> str:
        return self.valves.normalized_base_url

    @property
    def user_id(self) -> str:
        return str(self.valves.USER_ID or "")

    @property
    def scope_key(self) -> str:
        return f"{self.base_url}|{self.user_id}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.valves.ACCESS_TOKEN:
            headers["Authorization"] = f"Bearer {self.valves.ACCESS_TOKEN}"
        if self.user_id:
            headers[self.valves.user_header] = self.user_id
        return headers

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _create_http_session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(limit=50, limit_per_host=20, ttl_dns_cache=300)
        timeout = aiohttp.ClientTimeout(total=float(self.valves.HTTP_TIMEOUT_SECONDS))
        return aiohttp.ClientSession(connector=connector, timeout=timeout, json_serialize=json.dumps)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._create_http_session()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ChannelProviderClient":
        return self

    async def __aexit__(self, *_exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
        channel_id: Any = None,
        use_cache: bool = False,
    ) -> Any:
        """Issue one logical request (with retries) and return the decoded JSON body."""
        if not self.base_url:
            raise ConnectivityError(
                "No provider base URL configured",
                suggestion="Set BASE_URL (or MODEL_RECONCILER_BASE_URL).",
            )
        url = f"{self.base_url}{path}"
        scope = self.scope_key
        if CircuitBreaker.auth_failure_active(scope):
            raise AuthError(
                "Skipping request: the provider rejected these credentials moments ago",
                status=401,
                url=url,
                channel_id=channel_id,
                suggestion="Fix the access token, then retry once the auth back-off expires.",
            )
        if not self._breaker.allows(scope):
            raise ConnectivityError(
                "Skipping request: too many recent connection failures",
                url=url,
                channel_id=channel_id,
                suggestion="Wait for the provider to recover before retrying the job.",
            )

        cache_key = None
        if use_cache and method == "GET":
            cache_key = f"GET {path}?{json.dumps(params or {}, sort_keys=True)}"
            cached = self.request_cache.get(cache_key)
            if cached is not None:
                return cached

        base_wait = max(0.0, float(self.valves.HTTP_RETRY_BASE_SECONDS))
        retryer = AsyncRetrying(
            stop=stop_after_attempt(int(self.valves.HTTP_RETRY_ATTEMPTS)),
            wait=_RetryWait(wait_exponential(multiplier=base_wait, min=base_wait, max=max(base_wait * 8, 1))),
            retry=retry_if_exception_type(
                (aiohttp.ClientError, asyncio.TimeoutError, _RetryableHTTPStatusError)
            ),
            reraise=True,
        )

        session = self._get_session()
        try:
            async for attempt in retryer:
                with attempt:
                    async with session.request(
                        method,
                        url,
                        params=params,
                        json=json_body,
                        headers=self._headers(),
                    ) as resp:
                        try:
                            body_text = await resp.text()
                        except (UnicodeDecodeError, LookupError) as exc:
                            if resp.status < 400:
                                raise UpstreamFormatError(
                                    f"Provider returned an undecodable body: {exc}",
                                    url=url,
                                    channel_id=channel_id,
                                ) from exc
                            body_text = (await resp.read()).decode("utf-8", errors="replace")
                        if resp.status >= 400:
                            retryable, retry_after = _classify_retryable_http_error(resp.status, resp.headers)
                            if retryable:
                                self.logger.debug("Retryable HTTP %s from %s", resp.status, url)
                                raise _RetryableHTTPStatusError(resp.status, url, retry_after, body_text)
                            raise build_http_error(resp.status, body_text, url=url, channel_id=channel_id)
        except AuthError:
            CircuitBreaker.note_auth_failure(scope, ttl_seconds=self.valves.AUTH_FAILURE_TTL_SECONDS)
            raise
        except _RetryableHTTPStatusError as exc:
            self._breaker.record_failure(scope)
            raise build_http_error(exc.status, exc.body, url=url, channel_id=channel_id) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self._breaker.record_failure(scope)
            raise ConnectivityError(
                str(exc) or type(exc).__name__,
                url=url,
                channel_id=channel_id,
                suggestion=connectivity_suggestion(exc),
            ) from exc

        self._breaker.reset(scope)
        payload = _safe_json_loads(body_text)
        if payload is None and body_text.strip():
            raise UpstreamFormatError("Provider returned a non-JSON body", url=url, channel_id=channel_id)
        if cache_key is not None and payload is not None:
            self.request_cache.set(cache_key, payload)
        return payload

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def list_channels(self, page: int = 1, page_size: Optional[int] = None) -> tuple[list[ChannelRecord], int]:
        """Fetch one page of channels.

        The ``p`` query parameter is tried first; providers that ignore it
        (answer page 1 for a later page, or an unknown shape) are retried with
        ``page``.
        """
        page_size = page_size or self.valves.CHANNEL_PAGE_SIZE
        contracts = (
            {"p": page, "page_size": page_size},
            {"page": page, "page_size": page_size},
        )
        last_error: Optional[ReconcilerError] = None
        for index, params in enumerate(contracts):
            try:
                payload = await self._request_json("GET", _CHANNEL_LIST_PATH, params=params)
                items, total, reported_page = _parse_channel_page(payload)
            except (UpstreamFormatError, ConnectivityError) as exc:
                if isinstance(exc, ConnectivityError) and exc.status is None:
                    raise
                last_error = exc
                self.logger.warning("Channel listing with %s failed: %s", next(iter(params)), exc.message)
                continue
            if items is None:
                last_error = UpstreamFormatError("Unrecognized channel listing response", url=_CHANNEL_LIST_PATH)
                continue
            if index == 0 and page > 1 and reported_page == 1:
                self.logger.debug("Provider ignored the p parameter; retrying with page=%s", page)
                continue
            records = [ChannelRecord.from_api(item) for item in items if isinstance(item, dict)]
            return records, total
        if last_error is not None:
            raise last_error
        return [], 0

    async def list_all_channels(self) -> list[ChannelRecord]:
        page_size = self.valves.CHANNEL_PAGE_SIZE
        channels: list[ChannelRecord] = []
        seen: set[Any] = set()
        page = 1
        while True:
            records, total = await self.list_channels(page, page_size)
            fresh = [record for record in records if record.id not in seen]
            for record in fresh:
                seen.add(record.id)
            channels.extend(fresh)
            if len(records) < page_size or not fresh or len(channels) >= total:
                break
            page += 1
        self.logger.info("Listed %d channels from %s", len(channels), self.base_url)
        return channels

    async def get_channel_detail(self, channel_id: Any) -> ChannelRecord:
        payload = await self._request_json("GET", f"/api/channel/{channel_id}", channel_id=channel_id)
        if isinstance(payload, dict) and payload.get("success") is False:
            raise UpstreamFormatError(
                _normalize_optional_str(payload.get("message")) or "channel detail unavailable",
                channel_id=channel_id,
            )
        data = payload.get("data") if isinstance(payload, dict) and "data" in payload else payload
        if not isinstance(data, dict):
            raise UpstreamFormatError("Channel detail response carries no record", channel_id=channel_id)
        return ChannelRecord.from_api(data)

    async def update_channel(self, update: ChannelUpdate, base: Optional[dict[str, Any]] = None) -> None:
        """Replace a channel record. ``base`` is the record as last read."""
        body = update.to_payload(base)
        try:
            payload = await self._request_json("PUT", _CHANNEL_LIST_PATH, json_body=body, channel_id=update.channel_id)
        except (UpstreamFormatError, ConnectivityError) as exc:
            raise ChannelUpdateFailure(
                exc.message,
                status=exc.status,
                url=exc.url,
                channel_id=update.channel_id,
                suggestion=exc.suggestion,
            ) from exc
        if isinstance(payload, dict) and payload.get("success") is False:
            raise ChannelUpdateFailure(
                _normalize_optional_str(payload.get("message")) or "channel update rejected",
                channel_id=update.channel_id,
            )
        self.request_cache.invalidate(f"GET /api/channel/{update.channel_id}")
        self.request_cache.invalidate(f"GET {_CHANNEL_LIST_PATH}")
        self.logger.debug("Updated channel %s (%s)", update.channel_id, ", ".join(update.changed_fields()))

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def fetch_upstream_models(self, channel_id: Any) -> list[str]:
        """Ask the provider to query the channel's upstream for its live model list."""
        path = f"/api/channel/fetch_models/{channel_id}"
        payload = await self._request_json("GET", path, channel_id=channel_id)
        return extract_model_names(payload, url=path, channel_id=channel_id)

    async def list_channel_models(self, channel_id: Any) -> list[str]:
        """Generic listing: channel model endpoint first, then global model endpoints."""
        paths = [template.format(channel_id=channel_id) for template in _CHANNEL_MODEL_PATHS]
        paths.extend(_GLOBAL_MODEL_PATHS)
        for path in paths:
            try:
                payload = await self._request_json("GET", path, channel_id=channel_id, use_cache=True)
                names = extract_model_names(payload, url=path, channel_id=channel_id)
            except AuthError:
                raise
            except ReconcilerError as exc:
                self.logger.debug("Model listing %s unavailable: %s", path, exc.message)
                continue
            if names:
                self.logger.debug("Model listing %s returned %d models", path, len(names))
                return names
        return []
