"""Tests for checkpoint creation, restore and store bounds."""

from __future__ import annotations

import time

import pytest
from conftest import FakeChannelProvider

from model_reconciler.api.payloads import OMIT, ChannelUpdate
from model_reconciler.core.config import DEFAULT_TEST_MODEL
from model_reconciler.core.errors import CheckpointError
from model_reconciler.jobs.checkpoint import (
    Checkpoint,
    CheckpointManager,
    CheckpointStore,
    build_restore_update,
    snapshot_channel,
)


@pytest.fixture
def manager() -> CheckpointManager:
    return CheckpointManager(CheckpointStore(ttl_seconds=60, max_count=5), concurrency=2)


def _checkpoint(checkpoint_id: str, created_at: float) -> Checkpoint:
    return Checkpoint(
        id=checkpoint_id,
        base_url="https://provider.test",
        user_id="1",
        snapshots=[{"id": 1}],
        created_at=created_at,
    )


class TestCheckpointManager:
    @pytest.mark.asyncio
    async def test_restore_returns_channels_to_snapshot(self, manager, fake_provider, sample_channels) -> None:
        checkpoint = await manager.create(fake_provider, [1, 2])
        await fake_provider.update_channel(ChannelUpdate(channel_id=1, models="changed", model_mapping="{}"))
        await fake_provider.update_channel(ChannelUpdate(channel_id=2, name="renamed", key=OMIT))

        result = await manager.restore(fake_provider, checkpoint.id)

        assert result == {"checkpoint_id": checkpoint.id, "restored": 2, "failed": 0, "errors": []}
        assert fake_provider.channel(1) == sample_channels[0]
        assert fake_provider.channel(2) == sample_channels[1]

    @pytest.mark.asyncio
    async def test_restore_defaults_to_latest(self, manager, fake_provider) -> None:
        await manager.create(fake_provider, [1])
        newest = await manager.create(fake_provider, [2])
        result = await manager.restore(fake_provider)
        assert result["checkpoint_id"] == newest.id
        assert result["restored"] == 1

    @pytest.mark.asyncio
    async def test_restore_without_checkpoint(self, manager, fake_provider) -> None:
        with pytest.raises(CheckpointError):
            await manager.restore(fake_provider)
        with pytest.raises(CheckpointError):
            await manager.restore(fake_provider, "missing")

    @pytest.mark.asyncio
    async def test_refuses_other_connection(self, manager, fake_provider, sample_channels) -> None:
        checkpoint = await manager.create(fake_provider, [1])
        other_host = FakeChannelProvider(sample_channels, base_url="https://other.test")
        other_user = FakeChannelProvider(sample_channels, user_id="2")
        for provider in (other_host, other_user):
            with pytest.raises(CheckpointError):
                await manager.restore(provider, checkpoint.id)
            assert provider.updates == []

    @pytest.mark.asyncio
    async def test_partial_snapshot_failures_are_recorded(self, manager, fake_provider) -> None:
        fake_provider.fail_detail = {2}
        checkpoint = await manager.create(fake_provider, [1, 2, 1])
        assert [snapshot["id"] for snapshot in checkpoint.snapshots] == [1]
        assert checkpoint.failed_channel_ids == [2]
        assert checkpoint.summary()["channel_count"] == 1

    @pytest.mark.asyncio
    async def test_zero_snapshots_is_an_error(self, manager, fake_provider) -> None:
        fake_provider.fail_detail = {1, 2}
        with pytest.raises(CheckpointError):
            await manager.create(fake_provider, [1, 2])
        with pytest.raises(CheckpointError):
            await manager.create(fake_provider, [])
        assert len(manager.store) == 0

    @pytest.mark.asyncio
    async def test_restore_collects_channel_failures(self, manager, fake_provider) -> None:
        checkpoint = await manager.create(fake_provider, [1, 2])
        fake_provider.fail_update = {1}
        result = await manager.restore(fake_provider, checkpoint.id)
        assert result["restored"] == 1
        assert result["failed"] == 1
        assert result["errors"][0]["channel_id"] == 1
        assert result["errors"][0]["error"]["kind"] == "channel_update"

    @pytest.mark.asyncio
    async def test_unexpected_snapshot_error_only_fails_that_channel(self, manager, fake_provider) -> None:
        real_detail = fake_provider.get_channel_detail

        async def _detail(channel_id):
            if channel_id == 2:
                raise ValueError("malformed record")
            return await real_detail(channel_id)

        fake_provider.get_channel_detail = _detail
        checkpoint = await manager.create(fake_provider, [1, 2])
        assert [snapshot["id"] for snapshot in checkpoint.snapshots] == [1]
        assert checkpoint.failed_channel_ids == [2]

    @pytest.mark.asyncio
    async def test_unexpected_restore_error_only_fails_that_channel(self, manager, fake_provider) -> None:
        checkpoint = await manager.create(fake_provider, [1, 2])
        real_update = fake_provider.update_channel

        async def _update(update, base=None):
            if update.channel_id == 1:
                raise ValueError("serializer exploded")
            await real_update(update, base=base)

        fake_provider.update_channel = _update
        result = await manager.restore(fake_provider, checkpoint.id)
        assert result["restored"] == 1
        assert result["failed"] == 1
        assert result["errors"] == [
            {"channel_id": 1, "error": {"kind": "internal", "message": "serializer exploded"}}
        ]


class TestCheckpointStore:
    def test_evicts_oldest_first(self) -> None:
        store = CheckpointStore(ttl_seconds=60, max_count=2)
        now = time.time()
        for index, checkpoint_id in enumerate(("a", "b", "c")):
            store.add(_checkpoint(checkpoint_id, now - 3 + index))
        assert [item.id for item in store.list()] == ["c", "b"]

    def test_never_evicts_latest(self) -> None:
        store = CheckpointStore(ttl_seconds=60, max_count=2)
        now = time.time()
        store.add(_checkpoint("a", now - 1))
        store.add(_checkpoint("b", now - 2))
        store.add(_checkpoint("c", now - 10))
        assert store.latest_checkpoint_id == "c"
        assert {item.id for item in store.list()} == {"a", "c"}

    def test_expired_checkpoints_are_gone(self) -> None:
        store = CheckpointStore(ttl_seconds=60)
        checkpoint = store.add(_checkpoint("a", time.time()))
        checkpoint.expires_at = time.time() - 1
        with pytest.raises(CheckpointError):
            store.get("a")
        assert store.latest() is None

    def test_sweep(self) -> None:
        store = CheckpointStore(ttl_seconds=60)
        store.add(_checkpoint("a", time.time()))
        assert store.sweep(now=time.time() + 61) == 1
        assert len(store) == 0

    def test_delete(self) -> None:
        store = CheckpointStore(ttl_seconds=60)
        store.add(_checkpoint("a", time.time()))
        assert store.delete("a")
        assert not store.delete("a")
        assert store.latest_checkpoint_id is None


class TestRestorePayload:
    def test_snapshot_keeps_restorable_fields_only(self) -> None:
        snapshot = snapshot_channel({"id": 1, "name": "c", "used_quota": 99, "group": "vip"})
        assert snapshot == {"id": 1, "name": "c", "group": "vip"}

    def test_missing_required_fields_get_defaults(self) -> None:
        update = build_restore_update({"id": 5, "name": "x"})
        assert update.status == 1
        assert update.type == 1
        assert update.test_model == DEFAULT_TEST_MODEL
        assert update.base_url is OMIT
        assert update.key is OMIT
        assert update.priority is OMIT

    def test_omitted_fields_are_removed_from_payload(self) -> None:
        payload = build_restore_update({"id": 5, "name": "x", "priority": 0}).to_payload(
            {"id": 5, "name": "x", "base_url": "https://stale.test", "priority": 0}
        )
        assert "base_url" not in payload
        assert payload["priority"] == 0
        assert payload["models"] == ""
