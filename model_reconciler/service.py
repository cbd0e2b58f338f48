"""Service facade.

``ReconcilerService`` wires one provider connection to its caches, job store,
checkpoint store and orchestrator, and exposes the operations a UI or CLI
calls. Stores are created here and passed down explicitly so each service
instance (and each test) is fully isolated.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from .api.client import ChannelProvider, ChannelProviderClient
from .core.config import DEFAULT_RANK_LIMIT, Valves
from .core.logging_system import JobLogContext
from .jobs.checkpoint import CheckpointManager, CheckpointStore
from .jobs.options import JobOptions
from .jobs.orchestrator import BatchOrchestrator
from .jobs.store import JobStore
from .matching.matcher import rank_candidates
from .matching.rules import RuleSet
from .models.cache import ProviderModelCache
from .reconcile.analyzer import ChannelAnalyzer
from .reconcile.results import AnalysisResult

LOGGER = logging.getLogger(__name__)


class ReconcilerService:
    """Entry point for jobs, single-channel analysis and checkpoints."""

    def __init__(self, valves: Optional[Valves] = None, client: Optional[ChannelProvider] = None) -> None:
        self.valves = valves or Valves()
        self.logger = LOGGER
        self._owns_client = client is None
        self.client: ChannelProvider = client or ChannelProviderClient(self.valves)
        self.model_cache = ProviderModelCache.from_valves(self.valves)
        self.analyzer = ChannelAnalyzer(self.client, self.model_cache, self.valves)
        self.jobs = JobStore(
            ttl_seconds=self.valves.JOB_TTL_SECONDS,
            max_log_lines=self.valves.JOB_MAX_LOG_LINES,
            log_level=logging.getLevelName(self.valves.LOG_LEVEL),
        )
        self.checkpoint_store = CheckpointStore(
            ttl_seconds=self.valves.CHECKPOINT_TTL_SECONDS,
            max_count=self.valves.CHECKPOINT_MAX_COUNT,
        )
        self.checkpoints = CheckpointManager(self.checkpoint_store, concurrency=self.valves.CHECKPOINT_CONCURRENCY)
        self.orchestrator = BatchOrchestrator(self.client, self.analyzer, self.jobs, self.checkpoints, self.valves)
        JobLogContext.install()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def start_job(self, options: JobOptions | dict[str, Any]) -> str:
        """Schedule a job on the running event loop and return its id."""
        if not isinstance(options, JobOptions):
            options = JobOptions.model_validate(options)
        job = self.orchestrator.start(options)
        self.logger.info("Scheduled %s job %s", job.type, job.id)
        return job.id

    def get_job(self, job_id: str, cursor: int = 0) -> dict[str, Any]:
        """Job state plus log entries from ``cursor`` on.

        Raises:
            JobNotFoundError: When the id is unknown or has been swept.
        """
        self.jobs.sweep()
        job = self.jobs.get(job_id)
        logs, next_cursor = job.logs.read(cursor)
        return {"job": job.to_dict(), "logs": logs, "next_cursor": next_cursor}

    def cancel_job(self, job_id: str) -> bool:
        return self.jobs.cancel(job_id)

    # ------------------------------------------------------------------
    # Single channel
    # ------------------------------------------------------------------

    async def analyze_channel(
        self,
        channel_id: Any,
        *,
        include_upgrades: bool = False,
        rules: Optional[RuleSet | dict[str, Any]] = None,
        force_refresh: bool = False,
    ) -> AnalysisResult:
        if isinstance(rules, dict):
            rules = RuleSet.model_validate(rules)
        channel = await self.client.get_channel_detail(channel_id)
        return await self.analyzer.analyze(
            channel,
            include_upgrades=include_upgrades,
            rules=rules,
            force_refresh=force_refresh,
        )

    async def rank_candidates(
        self,
        source: str,
        channel_id: Any,
        limit: int = DEFAULT_RANK_LIMIT,
    ) -> list[dict[str, Any]]:
        """Ranked upstream candidates of ``channel_id`` for manual selection."""
        channel = await self.client.get_channel_detail(channel_id)
        upstream, _source = await self.analyzer.resolve_upstream(channel)
        return [candidate.to_dict() for candidate in rank_candidates(source, upstream, limit)]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(self, channel_ids: Optional[Iterable[Any]] = None) -> str:
        if channel_ids is None:
            channel_ids = [channel.id for channel in await self.client.list_all_channels()]
        checkpoint = await self.checkpoints.create(self.client, channel_ids)
        return checkpoint.id

    async def restore_checkpoint(self, checkpoint_id: Optional[str] = None) -> dict[str, Any]:
        """Restore ``checkpoint_id``, or the latest checkpoint when omitted."""
        result = await self.checkpoints.restore(self.client, checkpoint_id)
        self.model_cache.clear()
        return result

    def list_checkpoints(self) -> list[dict[str, Any]]:
        return [checkpoint.summary() for checkpoint in self.checkpoint_store.list()]

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        if self._owns_client and isinstance(self.client, ChannelProviderClient):
            await self.client.close()

    async def __aenter__(self) -> "ReconcilerService":
        return self

    async def __aexit__(self, *_exc_info: Any) -> None:
        await self.aclose()
