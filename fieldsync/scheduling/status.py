"""
Status Reporter

Emits one event per state transition to the notification sink and serves
read-only status views composed from the registry, the guard, the executor
and the retry coordinator.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel

from fieldsync.kernel.errors import SourceNotFoundError
from fieldsync.notifications.sinks import NotificationSink, SyncEvent, SyncEventType
from fieldsync.scheduling.guard import ExecutionGuard, RunRecord, RunTrigger
from fieldsync.scheduling.registry import ScheduleRegistry
from fieldsync.scheduling.retry import RetryCoordinator, RetryPlan
from fieldsync.sources.base.descriptor import SourceDescriptor, SourceKind, SourceStatus

if TYPE_CHECKING:
    from fieldsync.scheduling.executor import SyncExecutor

logger = structlog.get_logger()


class RunView(BaseModel):
    run_id: str
    started_at: datetime
    retry_attempt: int
    trigger: RunTrigger


class ScheduleStatus(BaseModel):
    """Everything known about one source, in one read-only view."""

    source_id: str
    name: str | None = None
    kind: SourceKind
    status: SourceStatus

    # Schedule
    is_scheduled: bool
    is_paused: bool
    schedule_expression: str | None = None
    timezone: str
    last_run: datetime | None = None
    next_run: datetime | None = None
    fire_count: int = 0
    failure_count: int = 0

    # Execution
    is_running: bool
    running: RunView | None = None
    pending_retry: RetryPlan | None = None

    # Outcomes
    last_sync_at: datetime | None = None
    sync_count: int = 0
    error_count: int = 0
    last_error: str | None = None
    last_sync_result: dict[str, Any] | None = None


def compose_status(
    source: SourceDescriptor,
    registry: ScheduleRegistry,
    guard: ExecutionGuard,
    retries: RetryCoordinator,
) -> ScheduleStatus:
    trigger = registry.get(source.id)
    run: RunRecord | None = guard.status(source.id)
    return ScheduleStatus(
        source_id=source.id,
        name=source.name,
        kind=source.kind,
        status=source.status,
        is_scheduled=trigger is not None,
        is_paused=bool(trigger and trigger.paused),
        schedule_expression=trigger.schedule_expression if trigger else source.schedule_expression,
        timezone=trigger.timezone if trigger else source.timezone,
        last_run=trigger.last_fired_at if trigger else None,
        next_run=trigger.next_fire_estimate if trigger else None,
        fire_count=trigger.fire_count if trigger else 0,
        failure_count=trigger.failure_count if trigger else 0,
        is_running=run is not None,
        running=RunView(
            run_id=run.run_id,
            started_at=run.started_at,
            retry_attempt=run.retry_attempt,
            trigger=run.trigger,
        ) if run else None,
        pending_retry=retries.pending(source.id),
        last_sync_at=source.last_sync_at,
        sync_count=source.sync_count,
        error_count=source.error_count,
        last_error=source.last_error,
        last_sync_result=source.last_sync_result,
    )


class StatusReporter:
    """
    Fire-and-forget event delivery plus status queries.

    `emit` only enqueues, so it never blocks or fails the scheduling
    operation that calls it. A single consumer task delivers queued events
    in order; a failing or slow sink is logged and skipped.
    """

    def __init__(
        self,
        sink: NotificationSink,
        *,
        queue_size: int = 1000,
        delivery_timeout_seconds: float = 5.0,
    ):
        self._sink = sink
        self._queue: asyncio.Queue[SyncEvent] = asyncio.Queue(maxsize=queue_size)
        self._delivery_timeout_seconds = delivery_timeout_seconds
        self._consumer: asyncio.Task | None = None
        self._dropped = 0

        self._registry: ScheduleRegistry | None = None
        self._guard: ExecutionGuard | None = None
        self._executor: SyncExecutor | None = None
        self._retries: RetryCoordinator | None = None

    def attach(
        self,
        *,
        registry: ScheduleRegistry,
        guard: ExecutionGuard,
        executor: SyncExecutor,
        retries: RetryCoordinator,
    ) -> None:
        """Wire the components whose state the status views read."""
        self._registry = registry
        self._guard = guard
        self._executor = executor
        self._retries = retries

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def emit(
        self,
        event_type: SyncEventType | str,
        source_id: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event = SyncEvent(
            event_type=getattr(event_type, "value", event_type),
            source_id=source_id,
            payload=payload or {},
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Event queue full, dropping sync event",
                event_type=event.event_type,
                source_id=source_id,
                dropped=self._dropped,
            )

    async def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="fieldsync-status-reporter")

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued (bounded by `timeout`), then stop the consumer."""
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out delivering queued sync events", remaining=self._queue.qsize())
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        try:
            await self._sink.close()
        except Exception as e:
            logger.warning("Failed to close notification sink", error=str(e))

    async def flush(self) -> None:
        """Wait until every queued event has been handed to the sink."""
        if self._consumer is None or self._consumer.done():
            while not self._queue.empty():
                await self._deliver(self._queue.get_nowait())
                self._queue.task_done()
            return
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: SyncEvent) -> None:
        try:
            await asyncio.wait_for(
                self._sink.publish(event.event_type, event.source_id, event.payload),
                timeout=self._delivery_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out publishing sync event",
                event_type=event.event_type,
                source_id=event.source_id,
            )
        except Exception as e:
            logger.warning(
                "Failed to publish sync event",
                event_type=event.event_type,
                source_id=event.source_id,
                error=str(e),
            )

    @property
    def dropped_events(self) -> int:
        return self._dropped

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    def get_status(self, source_id: str) -> ScheduleStatus:
        """
        Compose the status view for one source.

        Raises:
            SourceNotFoundError: If the source is not known to the scheduler
        """
        registry, guard, executor, retries = self._components()
        source = executor.get(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return compose_status(source, registry, guard, retries)

    def get_all_statuses(self) -> dict[str, ScheduleStatus]:
        registry, guard, executor, retries = self._components()
        return {
            source.id: compose_status(source, registry, guard, retries)
            for source in executor.descriptors()
        }

    def get_stats(self) -> dict[str, Any]:
        """Totals plus per-trigger and per-run listings."""
        registry, guard, executor, retries = self._components()
        runs = guard.running()
        return {
            "total_sources": len(executor.descriptors()),
            "total_scheduled": len(registry),
            "currently_running": len(runs),
            "pending_retries": len(retries.pending_all()),
            "dropped_events": self._dropped,
            "scheduled_tasks": [
                {
                    "source_id": source_id,
                    "schedule": trigger.schedule_expression,
                    "timezone": trigger.timezone,
                    "paused": trigger.paused,
                    "last_run": trigger.last_fired_at,
                    "next_run": trigger.next_fire_estimate,
                    "fire_count": trigger.fire_count,
                    "failure_count": trigger.failure_count,
                }
                for source_id, trigger in registry.all().items()
            ],
            "running_tasks": [
                {
                    "source_id": run.source_id,
                    "run_id": run.run_id,
                    "start_time": run.started_at,
                    "retry_count": run.retry_attempt,
                    "trigger": run.trigger.value,
                    "source_name": run.source_snapshot.display_name,
                }
                for run in runs
            ],
        }

    def _components(self) -> tuple[ScheduleRegistry, ExecutionGuard, SyncExecutor, RetryCoordinator]:
        if self._registry is None or self._guard is None or self._executor is None or self._retries is None:
            raise RuntimeError("StatusReporter is not attached to a scheduler")
        return self._registry, self._guard, self._executor, self._retries
