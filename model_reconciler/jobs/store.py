"""In-memory job registry.

A job is mutated only by its own worker pool (progress, results, status) and
by an external cancel request. Finished jobs are swept after ``JOB_TTL_SECONDS``.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from ..core.errors import JobNotFoundError
from ..core.logging_system import JobLogBuffer
from .options import JobMode, JobOptions

LOGGER = logging.getLogger(__name__)

JobStatus = Literal["running", "completed", "cancelled", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "cancelled", "failed"})


def _empty_summary() -> dict[str, int]:
    return {
        "scanned_channels": 0,
        "updated_channels": 0,
        "fixed_mappings": 0,
        "broken_mappings": 0,
        "new_mappings": 0,
        "errors": 0,
    }


@dataclass(slots=True)
class Job:
    id: str
    type: JobMode
    options: JobOptions
    logs: JobLogBuffer
    status: JobStatus = "running"
    total: int = 0
    current: int = 0
    cancel_requested: bool = False
    results: list[dict[str, Any]] = field(default_factory=list)
    analyses: dict[str, Any] = field(default_factory=dict, repr=False)
    summary: dict[str, int] = field(default_factory=_empty_summary)
    checkpoint_id: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> dict[str, int]:
        with self._lock:
            current, total = self.current, self.total
        percent = int(current * 100 / total) if total else (100 if self.is_terminal else 0)
        return {"current": current, "total": total, "percent": percent}

    def set_total(self, total: int) -> None:
        with self._lock:
            self.total = max(self.total, int(total))

    def advance(self) -> int:
        """Count one finished channel; never exceeds ``total``."""
        with self._lock:
            if self.current < self.total:
                self.current += 1
            return self.current

    def finish(self, status: JobStatus, *, error: Optional[dict[str, Any]] = None) -> None:
        with self._lock:
            if self.status in TERMINAL_STATUSES:
                return
            self.status = status
            self.error = error
            self.finished_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "progress": self.progress,
            "cancel_requested": self.cancel_requested,
            "results": [dict(result) for result in self.results],
            "summary": dict(self.summary),
            "checkpoint_id": self.checkpoint_id,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class JobStore:
    """Thread-safe map of job id to ``Job`` with TTL sweeping of finished jobs."""

    def __init__(self, *, ttl_seconds: float = 1800.0, max_log_lines: int = 2000, log_level: int = logging.INFO) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_log_lines = int(max_log_lines)
        self.log_level = log_level
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def create(self, options: JobOptions) -> Job:
        self.sweep()
        job = Job(
            id=uuid.uuid4().hex,
            type=options.mode,
            options=options,
            logs=JobLogBuffer(self.max_log_lines, level=self.log_level),
        )
        with self._lock:
            self._jobs[job.id] = job
        LOGGER.debug("Created %s job %s", job.type, job.id)
        return job

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Unknown job: {job_id}")
        return job

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation; only running jobs accept it."""
        job = self.get(job_id)
        if job.status != "running":
            return False
        job.cancel_requested = True
        job.logs.append("Cancellation requested", level="WARNING")
        LOGGER.info("Cancellation requested for job %s", job_id)
        return True

    def list(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop finished jobs older than the TTL; returns how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal and job.finished_at is not None and now - job.finished_at > self.ttl_seconds
            ]
            for job_id in expired:
                self._jobs.pop(job_id, None)
        if expired:
            LOGGER.debug("Swept %d expired job(s)", len(expired))
        return len(expired)
