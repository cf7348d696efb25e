"""
Cleanup Sweeper

Periodic last-resort reaper for runs that outlived every timeout.
"""

from __future__ import annotations

from typing import Callable

import structlog

from fieldsync.kernel.errors import StuckTaskError
from fieldsync.kernel.time import Clock, utc_now
from fieldsync.monitoring import get_metrics
from fieldsync.notifications.sinks import SyncEventType
from fieldsync.scheduling.executor import SyncExecutor
from fieldsync.scheduling.guard import ExecutionGuard, RunRecord
from fieldsync.scheduling.registry import ScheduleRegistry
from fieldsync.scheduling.status import StatusReporter
from fieldsync.sources.base.descriptor import SourceStatus

logger = structlog.get_logger()


class CleanupSweeper:
    """
    Releases RunRecords older than `threshold_seconds`.

    Reaping frees the source for its next fire and hands the run to
    `on_reap`, which the scheduler uses to cancel the abandoned task. If
    the coroutine still finishes, its outcome is discarded because it no
    longer owns the record. A reap is not counted as a sync failure and does not
    arm a retry.
    """

    def __init__(
        self,
        guard: ExecutionGuard,
        executor: SyncExecutor,
        registry: ScheduleRegistry,
        reporter: StatusReporter,
        *,
        threshold_seconds: float = 7200.0,
        clock: Clock = utc_now,
        on_reap: Callable[[RunRecord], None] | None = None,
    ):
        self._guard = guard
        self._executor = executor
        self._registry = registry
        self._reporter = reporter
        self.threshold_seconds = threshold_seconds
        self._clock = clock
        self._on_reap = on_reap

    async def sweep(self) -> list[RunRecord]:
        """Reap stuck runs, then refresh next-fire estimates. Returns the reaped runs."""
        now = self._clock()
        reaped: list[RunRecord] = []

        for run in self._guard.running():
            running_seconds = (now - run.started_at).total_seconds()
            if running_seconds <= self.threshold_seconds:
                continue
            # Released by run id: a run that finished meanwhile is left alone
            if not self._guard.release(run.source_id, run.run_id):
                continue

            error = StuckTaskError(
                source_id=run.source_id,
                run_id=run.run_id,
                running_seconds=running_seconds,
            )
            status = SourceStatus.PAUSED if self._registry.is_paused(run.source_id) else SourceStatus.ERROR
            await self._executor.update(run.source_id, status=status, last_error=error.message)

            logger.warning(
                "Reaped stuck sync run",
                source_id=run.source_id,
                run_id=run.run_id,
                running_seconds=running_seconds,
                threshold_seconds=self.threshold_seconds,
            )
            self._reporter.emit(
                SyncEventType.STUCK_TASK_REAPED,
                run.source_id,
                {
                    "run_id": run.run_id,
                    "name": run.source_snapshot.display_name,
                    "started_at": run.started_at.isoformat(),
                    "running_seconds": running_seconds,
                    "error": error.message,
                },
            )
            get_metrics().track_stuck_reap(run.source_snapshot.kind.value)
            if self._on_reap is not None:
                self._on_reap(run)
            reaped.append(run)

        refreshed = self._registry.refresh_estimates()
        logger.info("Cleanup sweep finished", reaped=len(reaped), triggers_refreshed=refreshed)
        return reaped
