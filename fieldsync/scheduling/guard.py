"""
Execution Guard

Enforces at most one in-flight run per source. Every path that starts a
sync (scheduled fire, manual trigger, retry) goes through `try_acquire`.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum

import structlog
from pydantic import BaseModel

from fieldsync.kernel.ids import new_prefixed_id
from fieldsync.kernel.time import Clock, utc_now
from fieldsync.sources.base.descriptor import SourceDescriptor

logger = structlog.get_logger()


class RunTrigger(str, Enum):
    """What started a run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"


class RunRecord(BaseModel):
    """An in-flight sync. Exists only while the run executes."""

    run_id: str
    source_id: str
    started_at: datetime
    retry_attempt: int = 0
    trigger: RunTrigger = RunTrigger.SCHEDULED
    source_snapshot: SourceDescriptor


class ExecutionGuard:
    """
    Mutex-protected map of source id to its in-flight RunRecord.

    A failed `try_acquire` is not an error: it is the "already running"
    signal, and the caller skips the redundant fire.

    `release` is keyed by run id, so a run that lost its record to the
    cleanup sweeper cannot release the record of a newer run when it
    finally returns.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._runs: dict[str, RunRecord] = {}

    def try_acquire(
        self,
        source: SourceDescriptor,
        *,
        retry_attempt: int = 0,
        trigger: RunTrigger = RunTrigger.SCHEDULED,
    ) -> RunRecord | None:
        """Insert a RunRecord for `source` unless one exists. Returns the new record or None."""
        with self._lock:
            if source.id in self._runs:
                return None
            run = RunRecord(
                run_id=new_prefixed_id("run"),
                source_id=source.id,
                started_at=self._clock(),
                retry_attempt=retry_attempt,
                trigger=trigger,
                source_snapshot=source.snapshot(),
            )
            self._runs[source.id] = run
            return run.model_copy()

    def release(self, source_id: str, run_id: str | None = None) -> bool:
        """
        Remove the RunRecord for `source_id`.

        With `run_id`, only removes the record if that run still owns it.
        Returns whether a record was removed.
        """
        with self._lock:
            current = self._runs.get(source_id)
            if current is None:
                return False
            if run_id is not None and current.run_id != run_id:
                return False
            del self._runs[source_id]
            return True

    @contextmanager
    def hold(self, run: RunRecord) -> Iterator[RunRecord]:
        """Scope a run: its record is released on exit, whatever the outcome."""
        try:
            yield run
        finally:
            self.release(run.source_id, run.run_id)

    def is_current(self, run: RunRecord) -> bool:
        """True while `run` still owns its source's record."""
        with self._lock:
            current = self._runs.get(run.source_id)
            return current is not None and current.run_id == run.run_id

    def status(self, source_id: str) -> RunRecord | None:
        """Read-only snapshot of the in-flight run for a source."""
        with self._lock:
            run = self._runs.get(source_id)
            return run.model_copy() if run else None

    def running(self) -> list[RunRecord]:
        """Snapshots of every in-flight run."""
        with self._lock:
            return [run.model_copy() for run in self._runs.values()]

    def __contains__(self, source_id: object) -> bool:
        with self._lock:
            return source_id in self._runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
