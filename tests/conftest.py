"""Shared fixtures: valves, an in-memory channel provider and sample channels."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Optional

import pytest

from model_reconciler.api.payloads import ChannelRecord, ChannelUpdate
from model_reconciler.core.circuit_breaker import CircuitBreaker
from model_reconciler.core.config import Valves
from model_reconciler.core.errors import ChannelUpdateFailure, UpstreamFormatError

BASE_URL = "https://provider.test"


class FakeChannelProvider:
    """In-memory channel provider recording calls and peak concurrency."""

    def __init__(
        self,
        channels: list[dict[str, Any]],
        upstream: Optional[dict[Any, Any]] = None,
        *,
        channel_models: Optional[dict[Any, list[str]]] = None,
        base_url: str = BASE_URL,
        user_id: str = "1",
        delay: float = 0.0,
    ) -> None:
        self._channels: dict[Any, dict[str, Any]] = {item["id"]: copy.deepcopy(item) for item in channels}
        self.upstream = upstream or {}
        self.channel_models = channel_models or {}
        self._base_url = base_url
        self._user_id = user_id
        self.delay = delay
        self.fail_detail: set[Any] = set()
        self.fail_update: set[Any] = set()
        self.updates: list[dict[str, Any]] = []
        self.fetch_calls: list[Any] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def user_id(self) -> str:
        return self._user_id

    def channel(self, channel_id: Any) -> dict[str, Any]:
        return copy.deepcopy(self._channels[channel_id])

    async def list_channels(self, page: int = 1, page_size: int = 100) -> tuple[list[ChannelRecord], int]:
        items = list(self._channels.values())
        start = (page - 1) * page_size
        page_items = items[start:start + page_size]
        return [ChannelRecord.from_api(copy.deepcopy(item)) for item in page_items], len(items)

    async def list_all_channels(self) -> list[ChannelRecord]:
        records, _total = await self.list_channels(1, 10_000)
        return records

    async def get_channel_detail(self, channel_id: Any) -> ChannelRecord:
        if channel_id in self.fail_detail or channel_id not in self._channels:
            raise UpstreamFormatError("channel detail unavailable", channel_id=channel_id)
        return ChannelRecord.from_api(copy.deepcopy(self._channels[channel_id]))

    async def update_channel(self, update: ChannelUpdate, base: Optional[dict[str, Any]] = None) -> None:
        if update.channel_id in self.fail_update:
            raise ChannelUpdateFailure("update rejected", channel_id=update.channel_id)
        payload = update.to_payload(base if base is not None else self._channels.get(update.channel_id))
        self.updates.append(payload)
        self._channels[update.channel_id] = payload

    async def fetch_upstream_models(self, channel_id: Any) -> list[str]:
        self.fetch_calls.append(channel_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            value = self.upstream.get(channel_id)
            if isinstance(value, Exception):
                raise value
            if value is None:
                raise UpstreamFormatError("no model list", channel_id=channel_id)
            return list(value)
        finally:
            self.in_flight -= 1

    async def list_channel_models(self, channel_id: Any) -> list[str]:
        return list(self.channel_models.get(channel_id, []))


def make_channel(channel_id: int, models: str, mapping: Any = "", *, status: int = 1, **extra: Any) -> dict[str, Any]:
    data = {
        "id": channel_id,
        "name": f"channel-{channel_id}",
        "status": status,
        "type": 1,
        "models": models,
        "model_mapping": mapping,
        "key": f"sk-{channel_id}",
        "base_url": "https://upstream.test",
        "test_model": "gpt-4o",
        "weight": 0,
        "group": "default",
    }
    data.update(extra)
    return data


@pytest.fixture(autouse=True)
def _reset_auth_failures():
    CircuitBreaker._AUTH_FAILURE_UNTIL.clear()
    yield
    CircuitBreaker._AUTH_FAILURE_UNTIL.clear()


@pytest.fixture
def valves() -> Valves:
    return Valves(
        BASE_URL=BASE_URL,
        ACCESS_TOKEN="sk-admin",
        USER_ID="1",
        HTTP_RETRY_ATTEMPTS=2,
        HTTP_RETRY_BASE_SECONDS=0,
        HTTP_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def sample_channels() -> list[dict[str, Any]]:
    return [
        make_channel(1, "gpt-4o,claude-3-5-sonnet-20241022", '{"claude-3-5-sonnet-20241022": "claude-3-5-sonnet-20241022"}'),
        make_channel(2, "gpt-4o-mini,deepseek-chat"),
        make_channel(3, "gemini-1.5-pro", status=2),
    ]


@pytest.fixture
def sample_upstream() -> dict[Any, Any]:
    return {
        1: ["[反重力]gpt-4o", "claude-3-7-sonnet"],
        2: ["gpt-4o-mini", "deepseek-chat"],
        3: ["gemini-1.5-pro"],
    }


@pytest.fixture
def fake_provider(sample_channels, sample_upstream) -> FakeChannelProvider:
    return FakeChannelProvider(sample_channels, sample_upstream)
