"""Asynchronous, best-effort audit sink.

Pipeline stages hand records to `AuditLogSink.record()` and continue
immediately. A daemon worker thread writes each record through an
AuditWriter; write failures and queue overflow are logged locally as
structured events carrying the full record and never reach the caller.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Any

from core.config import ComplianceConfig
from core.errors import AuditWriteFailure
from core.models import ExtractionAttempt, FetchAttempt
from core.pipeline import AuditRecorder, AuditWriter
from core.structured_logging import emit_json_event
from extractor.logging import extraction_attempt_to_dict
from fetcher.logging import fetch_attempt_to_dict

_STOP = object()


def _record_payload(event: Any) -> tuple[str, dict[str, Any] | str]:
    if isinstance(event, FetchAttempt):
        return "fetch_attempt", fetch_attempt_to_dict(event)
    if isinstance(event, ExtractionAttempt):
        return "extraction_attempt", extraction_attempt_to_dict(event)
    return type(event).__name__, repr(event)


class AuditLogSink(AuditRecorder):
    """Queue audit records and persist them off the critical path."""

    def __init__(
        self,
        writer: AuditWriter,
        max_queue: int = ComplianceConfig.AUDIT_QUEUE_MAX,
        start: bool = True,
    ) -> None:
        self.writer = writer
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._lock = threading.Lock()
        # Guards _closed together with enqueueing, so nothing lands behind _STOP.
        self._accept_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._closed = False
        self._stop_queued = False
        self.written = 0
        self.failed = 0
        self.dropped = 0
        if start:
            self.start()

    def start(self) -> None:
        """Start the worker thread (idempotent)."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run,
                name="audit-log-sink",
                daemon=True,
            )
            self._thread.start()

    def record(self, event: FetchAttempt | ExtractionAttempt) -> None:
        """Enqueue one record without blocking; overflow is logged, never raised."""
        with self._accept_lock:
            if self._closed:
                reason = "sink closed"
            else:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    reason = "queue full"
        self._log_dropped(event, reason)

    def _log_dropped(self, event: Any, reason: str) -> None:
        with self._lock:
            self.dropped += 1
        record_type, payload = _record_payload(event)
        emit_json_event(
            "audit_queue_full",
            run_id=getattr(event, "campaign_id", None),
            level="error",
            component="audit",
            reason=reason,
            record_type=record_type,
            record=payload,
        )

    def _write(self, event: Any) -> None:
        try:
            if isinstance(event, FetchAttempt):
                self.writer.write_fetch_attempt(event)
            elif isinstance(event, ExtractionAttempt):
                self.writer.write_extraction_attempt(event)
            else:
                raise AuditWriteFailure(f"unsupported audit record: {type(event).__name__}")
        except Exception as exc:
            with self._lock:
                self.failed += 1
            record_type, payload = _record_payload(event)
            emit_json_event(
                "audit_write_failure",
                run_id=getattr(event, "campaign_id", None),
                level="error",
                component="audit",
                record_type=record_type,
                record=payload,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        with self._lock:
            self.written += 1

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._write(event)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued record is handled. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float | None = 5.0) -> bool:
        """Stop accepting records, drain the queue, and stop the worker."""
        with self._accept_lock:
            self._closed = True
            thread = self._thread
            if thread is None or not thread.is_alive():
                return True
            if not self._stop_queued:
                try:
                    self._queue.put(_STOP, timeout=timeout)
                except queue.Full:
                    return False
                self._stop_queued = True
        thread.join(timeout)
        return not thread.is_alive()

    def __enter__(self) -> "AuditLogSink":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
