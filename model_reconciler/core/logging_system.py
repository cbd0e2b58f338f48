"""Job-scoped logging: capped in-memory buffers fed by the stdlib logging tree.

Every module logs through ``logging.getLogger(__name__)``. While a job runs,
``JobLogContext.buffer`` holds that job's ``JobLogBuffer``; the handler
installed on the package logger copies each record into the active buffer so
messages from the analyzer, client and checkpoint manager all land in the
job log without being threaded through call signatures.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextvars import ContextVar
from typing import Any, Optional

_PACKAGE_LOGGER_NAME = "model_reconciler"


class JobLogBuffer:
    """Append-only ring buffer with absolute cursors.

    Entries carry a monotonically increasing ``seq``. When the buffer exceeds
    ``max_lines`` the oldest entries are dropped, but sequence numbers keep
    counting so pollers can detect the gap and resume at the oldest retained
    entry.
    """

    def __init__(self, max_lines: int = 2000, *, level: int = logging.INFO) -> None:
        self.max_lines = max(1, int(max_lines))
        self.level = level
        self._entries: deque[dict[str, Any]] = deque(maxlen=self.max_lines)
        self._next_seq = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def next_seq(self) -> int:
        return self._next_seq

    def append(
        self,
        message: str,
        *,
        level: str = "INFO",
        channel_id: Optional[Any] = None,
        created: Optional[float] = None,
    ) -> dict[str, Any]:
        with self._lock:
            entry = {
                "seq": self._next_seq,
                "created": created if created is not None else time.time(),
                "level": level,
                "message": message,
                "channel_id": channel_id,
            }
            self._entries.append(entry)
            self._next_seq += 1
            return entry

    def read(self, cursor: int = 0, limit: Optional[int] = None) -> tuple[list[dict[str, Any]], int]:
        """Return ``(entries, next_cursor)`` for entries with ``seq >= cursor``."""
        with self._lock:
            cursor = max(0, int(cursor or 0))
            entries = [dict(entry) for entry in self._entries if entry["seq"] >= cursor]
            if limit is not None and limit > 0:
                entries = entries[:limit]
            next_cursor = entries[-1]["seq"] + 1 if entries else max(cursor, self._next_seq)
            if next_cursor > self._next_seq:
                next_cursor = self._next_seq
            return entries, next_cursor


class JobLogContext:
    """Context variables identifying the job and channel being processed."""

    buffer: ContextVar[Optional[JobLogBuffer]] = ContextVar("model_reconciler_job_log", default=None)
    channel_id: ContextVar[Optional[Any]] = ContextVar("model_reconciler_channel_id", default=None)

    _install_lock = threading.Lock()
    _handler: Optional[logging.Handler] = None

    @classmethod
    def install(cls) -> logging.Handler:
        """Attach the buffer-routing handler to the package logger (idempotent)."""
        with cls._install_lock:
            if cls._handler is not None:
                return cls._handler
            handler = _JobBufferHandler()
            logger = logging.getLogger(_PACKAGE_LOGGER_NAME)
            logger.addHandler(handler)
            if logger.level == logging.NOTSET or logger.level > logging.DEBUG:
                logger.setLevel(logging.DEBUG)
            root_logger = logging.getLogger()
            if not root_logger.handlers:
                root_logger.addHandler(logging.NullHandler())
            cls._handler = handler
            return handler


class _JobBufferHandler(logging.Handler):
    """Copies records into the active job's buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        buffer = JobLogContext.buffer.get()
        if buffer is None or record.levelno < buffer.level:
            return
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        # Logging must never break channel processing.
        try:
            buffer.append(
                message,
                level=record.levelname,
                channel_id=JobLogContext.channel_id.get(),
                created=record.created,
            )
        except Exception:
            self.handleError(record)
