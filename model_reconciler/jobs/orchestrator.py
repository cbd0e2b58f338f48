"""Batch job orchestration.

A job walks a list of channels with a fixed-size worker pool. Workers pull
the next channel from a shared index and check the job's cancel flag before
each claim, so cancellation never interrupts a channel mid-flight. In execute
mode one checkpoint of every targeted channel is written before the first
update; if that fails the job fails without touching any channel.

Everything logged while a job runs lands in the job's buffer through
``JobLogContext``, which each job task sets for itself and its workers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..api.client import ChannelProvider
from ..api.payloads import ChannelRecord
from ..core.config import Valves
from ..core.errors import ReconcilerError
from ..core.logging_system import JobLogContext
from ..reconcile.analyzer import ChannelAnalyzer
from ..reconcile.fixes import apply_fixes, is_valid_fix
from ..reconcile.results import FIX_DEGRADED_PATTERN, AnalysisResult, MappingFix
from .checkpoint import CheckpointManager
from .options import JobOptions
from .store import Job, JobStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _WorkItem:
    channel_id: Any
    channel_name: str = ""
    record: Optional[ChannelRecord] = None
    analysis: Optional[AnalysisResult] = None


def select_fixes(options: JobOptions, analysis: AnalysisResult) -> list[MappingFix]:
    """Fixes an execute job should apply for one channel.

    Only valid fixes are kept, one per listed alias. With ``selected_fixes``
    only the named aliases are applied; without it degraded-mode guesses are
    left for manual review.
    """
    chosen: list[MappingFix] = []
    seen: set[str] = set()
    selected = None
    if options.selected_fixes is not None:
        selected = {name.lower() for name in options.selected_fixes.get(str(analysis.channel_id), [])}
    for fix in analysis.new_mappings:
        if not is_valid_fix(fix):
            continue
        if selected is not None:
            if fix.standard_name.lower() not in selected and fix.source_alias.lower() not in selected:
                continue
        elif fix.fix_type == FIX_DEGRADED_PATTERN:
            continue
        key = fix.source_alias.lower()
        if key in seen:
            continue
        seen.add(key)
        chosen.append(fix)
    return chosen


class BatchOrchestrator:
    """Runs preview and execute jobs against one channel provider."""

    def __init__(
        self,
        client: ChannelProvider,
        analyzer: ChannelAnalyzer,
        jobs: JobStore,
        checkpoints: CheckpointManager,
        valves: Valves,
    ) -> None:
        self.client = client
        self.analyzer = analyzer
        self.jobs = jobs
        self.checkpoints = checkpoints
        self.valves = valves
        self.logger = LOGGER
        self._tasks: set[asyncio.Task] = set()
        JobLogContext.install()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, options: JobOptions) -> Job:
        """Validate, register and schedule a job on the running loop."""
        self._validate(options)
        job = self.jobs.create(options)
        task = asyncio.create_task(self.run(job), name=f"reconcile-job-{job.id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    def _validate(self, options: JobOptions) -> None:
        if options.source_job_id is None:
            return
        if options.mode != "execute":
            raise ValueError("source_job_id is only meaningful for execute jobs.")
        source = self.jobs.get(options.source_job_id)
        if source.type != "preview" or source.status != "completed":
            raise ValueError(
                f"Job {source.id} must be a completed preview job (is {source.type}/{source.status})."
            )

    async def shutdown(self) -> None:
        """Request cancellation of every running job and wait for their tasks."""
        for job in self.jobs.list():
            if job.status == "running":
                job.cancel_requested = True
        tasks = list(self._tasks)
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                self.logger.error("Job task failed during shutdown: %s", result, exc_info=result)

    async def run(self, job: Job) -> Job:
        """Run ``job`` to a terminal state and return it."""
        token = JobLogContext.buffer.set(job.logs)
        try:
            self.logger.info("Job %s started (%s)", job.id, job.type)
            await self._execute(job)
        except asyncio.CancelledError:
            job.finish("cancelled")
            raise
        except ReconcilerError as exc:
            self.logger.error("Job %s failed: %s", job.id, exc.message)
            job.finish("failed", error=exc.to_dict())
        except Exception as exc:
            self.logger.exception("Job %s failed unexpectedly", job.id)
            job.finish("failed", error={"kind": "internal", "message": str(exc) or type(exc).__name__})
        else:
            job.finish("cancelled" if job.cancel_requested else "completed")
            self.logger.info(
                "Job %s %s: %d/%d channel(s), %d updated, %d error(s)",
                job.id,
                job.status,
                job.current,
                job.total,
                job.summary["updated_channels"],
                job.summary["errors"],
            )
        finally:
            JobLogContext.buffer.reset(token)
        return job

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _plan(self, options: JobOptions) -> list[_WorkItem]:
        if options.source_job_id is not None:
            return self._plan_from_preview(options)

        channels = await self.client.list_all_channels()
        if options.channel_ids is not None:
            wanted = {str(channel_id) for channel_id in options.channel_ids}
            missing = wanted - {str(channel.id) for channel in channels}
            if missing:
                self.logger.warning("Unknown channel id(s) ignored: %s", ", ".join(sorted(missing)))
            channels = [channel for channel in channels if str(channel.id) in wanted]
        if options.only_enabled:
            channels = [channel for channel in channels if channel.is_enabled]
        return [_WorkItem(channel.id, channel.name, record=channel) for channel in channels]

    def _plan_from_preview(self, options: JobOptions) -> list[_WorkItem]:
        source = self.jobs.get(options.source_job_id or "")
        wanted = None if options.channel_ids is None else {str(item) for item in options.channel_ids}
        if options.selected_fixes is not None:
            selected = set(options.selected_fixes)
            wanted = selected if wanted is None else wanted & selected
        items: list[_WorkItem] = []
        for key, analysis in source.analyses.items():
            if wanted is not None and key not in wanted:
                continue
            if not analysis.new_mappings:
                continue
            items.append(_WorkItem(analysis.channel_id, analysis.channel_name, analysis=analysis))
        self.logger.info("Reusing %d analysed channel(s) from preview job %s", len(items), source.id)
        return items

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, job: Job) -> None:
        options = job.options
        items = await self._plan(options)
        job.set_total(len(items))
        if not items:
            self.logger.info("Job %s has no channels to process", job.id)
            return

        if options.mode == "execute":
            checkpoint = await self.checkpoints.create(self.client, [item.channel_id for item in items])
            job.checkpoint_id = checkpoint.id

        concurrency = min(options.resolved_concurrency(self.valves.JOB_CONCURRENCY), len(items))
        next_index = 0

        async def _worker(worker_id: int) -> None:
            nonlocal next_index
            while True:
                if job.cancel_requested:
                    self.logger.debug("Worker %d stopping: job cancelled", worker_id)
                    return
                if next_index >= len(items):
                    return
                item = items[next_index]
                next_index += 1
                await self._process(job, item)
                job.advance()

        workers = [
            asyncio.create_task(_worker(index), name=f"reconcile-worker-{index}")
            for index in range(concurrency)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()

    async def _process(self, job: Job, item: _WorkItem) -> None:
        options = job.options
        JobLogContext.channel_id.set(item.channel_id)
        result: dict[str, Any] = {
            "channel_id": item.channel_id,
            "channel_name": item.channel_name,
            "status": "analyzed",
            "analysis": None,
            "fixes_applied": 0,
            "error": None,
        }
        summary = job.summary
        try:
            analysis = item.analysis
            if analysis is None and item.record is not None:
                analysis = await self.analyzer.analyze(
                    item.record,
                    include_upgrades=options.include_upgrades,
                    rules=options.rules,
                    force_refresh=options.force_refresh,
                )
            if analysis is None:
                raise ReconcilerError("Nothing to analyse", channel_id=item.channel_id)
            job.analyses[str(item.channel_id)] = analysis
            result["analysis"] = analysis.to_dict()
            summary["broken_mappings"] += len(analysis.broken_mappings)
            summary["new_mappings"] += len(analysis.new_mappings)

            if options.mode == "execute":
                applied = await self._apply(options, analysis)
                if applied is None:
                    result["status"] = "skipped"
                elif applied:
                    result["status"] = "updated"
                    result["fixes_applied"] = applied
                    summary["updated_channels"] += 1
                    summary["fixed_mappings"] += applied
                else:
                    result["status"] = "unchanged"
        except ReconcilerError as exc:
            self.logger.warning("Channel %s failed: %s", item.channel_id, exc.message)
            result["status"] = "error"
            result["error"] = exc.to_dict()
            summary["errors"] += 1
        except Exception as exc:
            self.logger.error("Channel %s failed unexpectedly: %s", item.channel_id, exc, exc_info=True)
            result["status"] = "error"
            result["error"] = {
                "kind": "internal",
                "message": str(exc) or type(exc).__name__,
                "channel_id": item.channel_id,
            }
            summary["errors"] += 1
        finally:
            summary["scanned_channels"] += 1
            job.results.append(result)
            JobLogContext.channel_id.set(None)

    async def _apply(self, options: JobOptions, analysis: AnalysisResult) -> Optional[int]:
        """Apply the chosen fixes; returns the fix count, 0 when nothing changed, None when skipped."""
        fixes = select_fixes(options, analysis)
        if not fixes:
            return 0
        channel = await self.client.get_channel_detail(analysis.channel_id)
        if options.only_enabled and not channel.is_enabled:
            self.logger.info("Channel %s is disabled; skipping update", channel.id)
            return None
        update = apply_fixes(
            channel,
            fixes,
            update_mode=options.update_mode,
            update_mapping=options.update_mapping,
        )
        if update is None:
            return 0
        await self.client.update_channel(update, base=channel.to_dict())
        self.logger.info("Channel %s updated with %d fix(es)", channel.id, len(fixes))
        return len(fixes)
