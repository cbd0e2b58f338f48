"""Channel checkpoints.

A checkpoint snapshots the fields a reconciliation run can touch (plus the
identity and routing fields needed to replay a full-record update) before an
execute job changes anything. Checkpoints are bound to the connection that
created them and restoring into a different connection is refused.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from ..api.client import ChannelProvider
from ..api.payloads import OMIT, ChannelUpdate
from ..core.config import DEFAULT_TEST_MODEL
from ..core.errors import CheckpointError, ReconcilerError

LOGGER = logging.getLogger(__name__)

SNAPSHOT_FIELDS = (
    "id",
    "name",
    "models",
    "model_mapping",
    "status",
    "type",
    "test_model",
    "base_url",
    "key",
    "weight",
    "priority",
    "auto_ban",
    "tag",
    "group",
)
_OPTIONAL_FIELDS = ("priority", "auto_ban", "tag", "group")


@dataclass(slots=True)
class Checkpoint:
    id: str
    base_url: str
    user_id: str
    snapshots: list[dict[str, Any]]
    failed_channel_ids: list[Any] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    expires_at: float = 0.0

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "base_url": self.base_url,
            "user_id": self.user_id,
            "channel_count": len(self.snapshots),
            "channel_ids": [snapshot.get("id") for snapshot in self.snapshots],
            "failed_channel_ids": list(self.failed_channel_ids),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


class CheckpointStore:
    """TTL and count-bounded checkpoint registry.

    Eviction removes the oldest checkpoints first but never the one recorded
    as latest while it is still within its TTL.
    """

    def __init__(self, *, ttl_seconds: float = 7200.0, max_count: int = 20) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_count = max(1, int(max_count))
        self._checkpoints: dict[str, Checkpoint] = {}
        self._latest_id: Optional[str] = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._checkpoints)

    @property
    def latest_checkpoint_id(self) -> Optional[str]:
        return self._latest_id

    def add(self, checkpoint: Checkpoint) -> Checkpoint:
        if not checkpoint.expires_at:
            checkpoint.expires_at = checkpoint.created_at + self.ttl_seconds
        with self._lock:
            self._checkpoints[checkpoint.id] = checkpoint
            self._latest_id = checkpoint.id
            self._prune_locked(time.time())
        return checkpoint

    def get(self, checkpoint_id: str) -> Checkpoint:
        now = time.time()
        with self._lock:
            checkpoint = self._checkpoints.get(checkpoint_id)
            if checkpoint is not None and checkpoint.is_expired(now):
                self._checkpoints.pop(checkpoint_id, None)
                if self._latest_id == checkpoint_id:
                    self._latest_id = None
                checkpoint = None
        if checkpoint is None:
            raise CheckpointError(
                f"Checkpoint {checkpoint_id} does not exist or has expired",
                suggestion="Create a new checkpoint before retrying the restore.",
            )
        return checkpoint

    def latest(self) -> Optional[Checkpoint]:
        latest_id = self._latest_id
        if latest_id is None:
            return None
        try:
            return self.get(latest_id)
        except CheckpointError:
            return None

    def list(self) -> list[Checkpoint]:
        self.sweep()
        with self._lock:
            return sorted(self._checkpoints.values(), key=lambda item: item.created_at, reverse=True)

    def delete(self, checkpoint_id: str) -> bool:
        with self._lock:
            removed = self._checkpoints.pop(checkpoint_id, None) is not None
            if self._latest_id == checkpoint_id:
                self._latest_id = None
            return removed

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [key for key, item in self._checkpoints.items() if item.is_expired(now)]
            for key in expired:
                self._checkpoints.pop(key, None)
                if self._latest_id == key:
                    self._latest_id = None
            return len(expired)

    def _prune_locked(self, now: float) -> None:
        for key in [key for key, item in self._checkpoints.items() if item.is_expired(now)]:
            self._checkpoints.pop(key, None)
            if self._latest_id == key:
                self._latest_id = None
        overflow = len(self._checkpoints) - self.max_count
        if overflow <= 0:
            return
        oldest = sorted(
            (item for item in self._checkpoints.values() if item.id != self._latest_id),
            key=lambda item: item.created_at,
        )
        for item in oldest[:overflow]:
            self._checkpoints.pop(item.id, None)
            LOGGER.debug("Evicted checkpoint %s", item.id)


def snapshot_channel(data: dict[str, Any]) -> dict[str, Any]:
    """Keep only the fields a restore needs; absent optional fields stay absent."""
    snapshot: dict[str, Any] = {}
    for name in SNAPSHOT_FIELDS:
        if name in data:
            snapshot[name] = data[name]
    return snapshot


def build_restore_update(snapshot: dict[str, Any]) -> ChannelUpdate:
    """Full-record update replaying ``snapshot``, with provider defaults for missing required fields."""
    update = ChannelUpdate(
        channel_id=snapshot.get("id"),
        name=snapshot.get("name", ""),
        models=snapshot.get("models", ""),
        model_mapping=snapshot.get("model_mapping", ""),
        status=snapshot.get("status") if snapshot.get("status") is not None else 1,
        type=snapshot.get("type") if snapshot.get("type") is not None else 1,
        test_model=snapshot.get("test_model") or DEFAULT_TEST_MODEL,
        base_url=snapshot.get("base_url", OMIT),
        key=snapshot.get("key", OMIT),
        weight=snapshot.get("weight", OMIT),
    )
    for name in _OPTIONAL_FIELDS:
        setattr(update, name, snapshot[name] if snapshot.get(name) is not None else OMIT)
    return update


class CheckpointManager:
    """Creates and restores checkpoints through a channel provider."""

    def __init__(self, store: CheckpointStore, *, concurrency: int = 6) -> None:
        self.store = store
        self.concurrency = max(1, int(concurrency))
        self.logger = LOGGER

    async def create(self, client: ChannelProvider, channel_ids: Iterable[Any]) -> Checkpoint:
        """Snapshot ``channel_ids``; individual failures are recorded, zero snapshots is an error."""
        ids = list(dict.fromkeys(channel_ids))
        if not ids:
            raise CheckpointError("No channels to checkpoint")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _snapshot(channel_id: Any) -> Optional[dict[str, Any]]:
            async with semaphore:
                try:
                    record = await client.get_channel_detail(channel_id)
                except ReconcilerError as exc:
                    self.logger.warning("Checkpoint: channel %s snapshot failed: %s", channel_id, exc.message)
                    return None
                except Exception as exc:
                    self.logger.error(
                        "Checkpoint: channel %s snapshot failed unexpectedly: %s", channel_id, exc, exc_info=True
                    )
                    return None
                return snapshot_channel(record.to_dict())

        results = await asyncio.gather(*(_snapshot(channel_id) for channel_id in ids))
        snapshots = [snapshot for snapshot in results if snapshot is not None]
        failed = [channel_id for channel_id, snapshot in zip(ids, results) if snapshot is None]
        if not snapshots:
            raise CheckpointError(
                "No channel could be snapshotted; refusing to continue without a checkpoint",
                suggestion="Check provider connectivity and credentials.",
            )
        checkpoint = self.store.add(
            Checkpoint(
                id=uuid.uuid4().hex,
                base_url=client.base_url,
                user_id=client.user_id,
                snapshots=snapshots,
                failed_channel_ids=failed,
            )
        )
        self.logger.info(
            "Checkpoint %s saved %d channel(s)%s",
            checkpoint.id,
            len(snapshots),
            f", {len(failed)} failed" if failed else "",
        )
        return checkpoint

    async def restore(self, client: ChannelProvider, checkpoint_id: Optional[str] = None) -> dict[str, Any]:
        """Replay a checkpoint (the latest when no id is given).

        Returns ``{checkpoint_id, restored, failed, errors}``; per-channel
        failures never abort the restore.
        """
        if checkpoint_id is None:
            latest = self.store.latest()
            if latest is None:
                raise CheckpointError("No checkpoint available to restore")
            checkpoint = latest
        else:
            checkpoint = self.store.get(checkpoint_id)

        if checkpoint.base_url != client.base_url or str(checkpoint.user_id) != str(client.user_id):
            raise CheckpointError(
                "Checkpoint belongs to a different provider connection",
                url=checkpoint.base_url,
                suggestion="Restore from the connection that created the checkpoint.",
            )

        semaphore = asyncio.Semaphore(self.concurrency)
        errors: list[dict[str, Any]] = []

        async def _restore(snapshot: dict[str, Any]) -> bool:
            async with semaphore:
                channel_id = snapshot.get("id")
                try:
                    await client.update_channel(build_restore_update(snapshot), base=snapshot)
                except ReconcilerError as exc:
                    self.logger.warning("Restore: channel %s failed: %s", channel_id, exc.message)
                    errors.append({"channel_id": channel_id, "error": exc.to_dict()})
                    return False
                except Exception as exc:
                    self.logger.error("Restore: channel %s failed unexpectedly: %s", channel_id, exc, exc_info=True)
                    errors.append(
                        {
                            "channel_id": channel_id,
                            "error": {"kind": "internal", "message": str(exc) or type(exc).__name__},
                        }
                    )
                    return False
                return True

        outcomes = await asyncio.gather(*(_restore(snapshot) for snapshot in checkpoint.snapshots))
        restored = sum(1 for outcome in outcomes if outcome)
        failed = len(outcomes) - restored
        self.logger.info("Checkpoint %s restored %d channel(s), %d failed", checkpoint.id, restored, failed)
        return {"checkpoint_id": checkpoint.id, "restored": restored, "failed": failed, "errors": errors}
