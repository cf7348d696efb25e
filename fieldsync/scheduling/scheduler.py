"""
Sync Scheduler

Control surface of the scheduler. Wires the schedule registry, execution
guard, sync executor, retry coordinator, cleanup sweeper and status
reporter around one shared APScheduler clock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fieldsync.config import Settings, get_settings
from fieldsync.kernel.errors import SourceNotFoundError, ValidationError
from fieldsync.kernel.time import Clock, utc_now
from fieldsync.monitoring import get_metrics
from fieldsync.notifications.sinks import NotificationSink, SyncEventType, build_notification_sink
from fieldsync.scheduling.executor import INTERRUPTED_ERROR, SyncExecutor
from fieldsync.scheduling.guard import ExecutionGuard, RunRecord, RunTrigger
from fieldsync.scheduling.registry import ScheduledTrigger, ScheduleRegistry, parse_schedule
from fieldsync.scheduling.retry import RetryCoordinator, RetryPolicy
from fieldsync.scheduling.status import ScheduleStatus, StatusReporter
from fieldsync.scheduling.sweeper import CleanupSweeper
from fieldsync.sources.base.adapter import AdapterRegistry, SourceAdapter
from fieldsync.sources.base.descriptor import SourceDescriptor, SourceStatus
from fieldsync.sources.store import InMemorySourceStore, SourceStore

logger = structlog.get_logger()

SWEEPER_JOB_ID = "cleanup_sweeper"


class SyncScheduler:
    """
    Schedules recurring syncs for registered data sources.

    Every path that starts a run (scheduled fire, retry, manual trigger)
    goes through `dispatch`, which acquires the execution guard and runs
    the executor in its own task.

    Usage:
        scheduler = SyncScheduler([SheetsAdapter(), LedgerAdapter()])
        await scheduler.start()
        await scheduler.register_source(SourceDescriptor(id="ds-1", kind="spreadsheet"))
        ...
        await scheduler.shutdown()
    """

    def __init__(
        self,
        adapters: AdapterRegistry | Iterable[SourceAdapter],
        store: SourceStore | None = None,
        sink: NotificationSink | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        sync_timeout_seconds: float | None = None,
        sync_timeout_overrides: dict[str, float] | None = None,
        stuck_run_threshold_seconds: float | None = None,
        sweep_interval_seconds: int | None = None,
        misfire_grace_seconds: int | None = None,
        shutdown_grace_seconds: float | None = None,
        event_queue_size: int | None = None,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()

        self._adapters = adapters if isinstance(adapters, AdapterRegistry) else AdapterRegistry(adapters)
        self._store = store or InMemorySourceStore()
        self._clock = clock
        self._sweep_interval_seconds = sweep_interval_seconds or settings.sweep_interval_seconds
        self._shutdown_grace_seconds = (
            shutdown_grace_seconds if shutdown_grace_seconds is not None else settings.shutdown_grace_seconds
        )

        self._scheduler = AsyncIOScheduler(timezone=settings.default_timezone)
        self._reporter = StatusReporter(
            sink or build_notification_sink(settings),
            queue_size=event_queue_size or settings.event_queue_size,
        )
        self._guard = ExecutionGuard(clock=clock)
        self._registry = ScheduleRegistry(
            self._scheduler,
            self._on_fire,
            misfire_grace_seconds=misfire_grace_seconds or settings.misfire_grace_seconds,
            clock=clock,
        )
        self._retries = RetryCoordinator(
            self._scheduler,
            self._on_retry,
            self._reporter,
            policy=retry_policy or RetryPolicy.from_settings(settings),
            clock=clock,
        )
        self._executor = SyncExecutor(
            self._adapters,
            self._guard,
            self._store,
            self._reporter,
            registry=self._registry,
            retries=self._retries,
            timeout_seconds=sync_timeout_seconds or settings.sync_timeout_seconds,
            timeout_overrides=(
                sync_timeout_overrides if sync_timeout_overrides is not None else settings.sync_timeout_overrides
            ),
            clock=clock,
        )
        self._sweeper = CleanupSweeper(
            self._guard,
            self._executor,
            self._registry,
            self._reporter,
            threshold_seconds=stuck_run_threshold_seconds or settings.stuck_run_threshold_seconds,
            clock=clock,
            on_reap=self._cancel_reaped,
        )
        self._reporter.attach(
            registry=self._registry,
            guard=self._guard,
            executor=self._executor,
            retries=self._retries,
        )

        self._tasks: dict[str, asyncio.Task] = {}
        self._started = False

    @classmethod
    def from_settings(
        cls,
        adapters: AdapterRegistry | Iterable[SourceAdapter],
        store: SourceStore | None = None,
        sink: NotificationSink | None = None,
        settings: Settings | None = None,
    ) -> "SyncScheduler":
        """Build a scheduler whose every tunable comes from settings."""
        return cls(adapters, store, sink, settings=settings or get_settings())

    # Components, exposed for inspection
    @property
    def guard(self) -> ExecutionGuard:
        return self._guard

    @property
    def registry(self) -> ScheduleRegistry:
        return self._registry

    @property
    def retries(self) -> RetryCoordinator:
        return self._retries

    @property
    def executor(self) -> SyncExecutor:
        return self._executor

    @property
    def sweeper(self) -> CleanupSweeper:
        return self._sweeper

    @property
    def reporter(self) -> StatusReporter:
        return self._reporter

    @property
    def is_running(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the clock and re-arm triggers for every stored source."""
        if self._started:
            return

        await self._reporter.start()
        self._scheduler.start()
        self._started = True

        restored = 0
        for descriptor in await self._store.list_all():
            if await self._restore(descriptor):
                restored += 1

        self._scheduler.add_job(
            self._sweeper.sweep,
            trigger=IntervalTrigger(seconds=self._sweep_interval_seconds),
            id=SWEEPER_JOB_ID,
            name="Cleanup sweeper",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

        logger.info(
            "Sync scheduler started",
            sources=restored,
            adapters=[k.value for k in self._adapters.kinds],
            sweep_interval_seconds=self._sweep_interval_seconds,
        )

    async def _restore(self, descriptor: SourceDescriptor) -> bool:
        if not self._adapters.supports(descriptor.kind):
            logger.warning("Skipping stored source with no adapter", source_id=descriptor.id, kind=descriptor.kind.value)
            return False
        try:
            parse_schedule(descriptor.effective_schedule, descriptor.timezone)
        except ValidationError as e:
            logger.warning(
                "Skipping stored source with invalid schedule",
                source_id=descriptor.id,
                schedule=descriptor.effective_schedule,
                error=e.message,
            )
            return False

        interrupted = descriptor.status == SourceStatus.SYNCING
        if interrupted:
            # No run survives a restart
            descriptor.status = SourceStatus.ERROR
            descriptor.last_error = INTERRUPTED_ERROR

        self._executor.track(descriptor)
        self._registry.register(
            descriptor.id,
            descriptor.effective_schedule,
            descriptor.timezone,
            paused=descriptor.status == SourceStatus.PAUSED,
        )
        if interrupted:
            logger.warning("Source was syncing at last shutdown", source_id=descriptor.id)
            await self._executor.update(descriptor.id)
        return True

    async def shutdown(self) -> None:
        """
        Stop every timer, wait briefly for in-flight runs, then stop.

        Runs still going after `shutdown_grace_seconds` are cancelled; their
        records are released and their descriptors left in error.
        """
        logger.info("Sync scheduler shutting down", running=len(self._guard))

        triggers = self._registry.cancel_all()
        retries = self._retries.cancel_all()
        try:
            self._scheduler.remove_job(SWEEPER_JOB_ID)
        except JobLookupError:
            pass

        if not await self.wait_for_runs(self._shutdown_grace_seconds):
            stragglers = list(self._tasks.values())
            logger.warning("Cancelling in-flight syncs", count=len(stragglers))
            for task in stragglers:
                task.cancel()
            await asyncio.gather(*stragglers, return_exceptions=True)

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        await self._reporter.stop()
        self._started = False

        logger.info("Sync scheduler shutdown", triggers_cancelled=triggers, retries_cancelled=retries)

    async def wait_for_runs(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs. Returns False if some were still running at `timeout`."""
        tasks = list(self._tasks.values())
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def register_source(self, descriptor: SourceDescriptor) -> ScheduledTrigger:
        """
        Schedule a source, or update the schedule of a known one.

        Args:
            descriptor: Source to schedule; a missing schedule uses the
                default cadence for its kind

        Returns:
            The armed trigger

        Raises:
            UnsupportedSourceKindError: If no adapter handles the source kind
            ValidationError: If the schedule or timezone is malformed
        """
        self._adapters.for_kind(descriptor.kind)
        schedule = descriptor.effective_schedule
        parse_schedule(schedule, descriptor.timezone)

        existing = self._executor.get(descriptor.id)
        if existing is None:
            source = descriptor.snapshot()
            if source.status == SourceStatus.SYNCING:
                source.status = SourceStatus.ACTIVE
            self._executor.track(source)
            trigger = self._registry.register(
                source.id,
                schedule,
                source.timezone,
                paused=source.status == SourceStatus.PAUSED,
            )
            await self._executor.update(source.id)
            event_type = SyncEventType.SCHEDULE_CREATED
        else:
            if self._registry.is_scheduled(descriptor.id):
                trigger = self._registry.update_schedule(descriptor.id, schedule, descriptor.timezone)
            else:
                trigger = self._registry.register(
                    descriptor.id,
                    schedule,
                    descriptor.timezone,
                    paused=existing.status == SourceStatus.PAUSED,
                )
            await self._executor.update(
                descriptor.id,
                name=descriptor.name,
                kind=descriptor.kind,
                schedule_expression=descriptor.schedule_expression,
                timezone=descriptor.timezone,
            )
            event_type = SyncEventType.SCHEDULE_UPDATED

        self._reporter.emit(
            event_type,
            descriptor.id,
            {
                "name": descriptor.display_name,
                "kind": descriptor.kind.value,
                "schedule": trigger.schedule_expression,
                "timezone": trigger.timezone,
                "next_run": trigger.next_fire_estimate.isoformat() if trigger.next_fire_estimate else None,
            },
        )
        return trigger

    async def cancel_source(self, source_id: str) -> bool:
        """
        Destroy the trigger and any pending retry of a source.

        An in-flight run is not interrupted. The descriptor stays known, so
        status views and manual triggers keep working. Returns whether a
        trigger existed.
        """
        existed = self._registry.cancel(source_id)
        self._retries.discard(source_id)
        if existed:
            self._reporter.emit(SyncEventType.SCHEDULE_CANCELLED, source_id, {"running": source_id in self._guard})
        return existed

    async def pause_source(self, source_id: str) -> bool:
        """Stop firing. Returns False if the source is already paused or unscheduled."""
        self._require(source_id)
        if not self._registry.pause(source_id):
            return False
        self._retries.discard(source_id)
        await self._executor.update(source_id, status=SourceStatus.PAUSED)
        self._reporter.emit(SyncEventType.SCHEDULE_PAUSED, source_id, {"running": source_id in self._guard})
        return True

    async def resume_source(self, source_id: str) -> bool:
        """Start firing again. Returns False if the source is not paused."""
        source = self._require(source_id)
        if not self._registry.resume(source_id):
            return False

        if source_id in self._guard:
            status = SourceStatus.SYNCING
        elif source.error_count > 0:
            status = SourceStatus.ERROR
        else:
            status = SourceStatus.ACTIVE
        await self._executor.update(source_id, status=status)

        trigger = self._registry.get(source_id)
        self._reporter.emit(
            SyncEventType.SCHEDULE_RESUMED,
            source_id,
            {
                "status": status.value,
                "next_run": (
                    trigger.next_fire_estimate.isoformat()
                    if trigger and trigger.next_fire_estimate
                    else None
                ),
            },
        )
        return True

    async def update_schedule(
        self,
        source_id: str,
        schedule_expression: str,
        timezone: str | None = None,
    ) -> ScheduledTrigger:
        """
        Replace the schedule of a source in one step.

        Takes effect for future fires only; an in-flight run keeps going.

        Raises:
            SourceNotFoundError: If the source is unknown
            ValidationError: If the new schedule is malformed; the old one stays armed
        """
        source = self._require(source_id)
        timezone = timezone or source.timezone
        previous = self._registry.get(source_id)

        if previous is None:
            trigger = self._registry.register(
                source_id,
                schedule_expression,
                timezone,
                paused=source.status == SourceStatus.PAUSED,
            )
        else:
            trigger = self._registry.update_schedule(source_id, schedule_expression, timezone)

        await self._executor.update(
            source_id,
            schedule_expression=trigger.schedule_expression,
            timezone=trigger.timezone,
        )
        self._reporter.emit(
            SyncEventType.SCHEDULE_UPDATED,
            source_id,
            {
                "previous_schedule": previous.schedule_expression if previous else None,
                "schedule": trigger.schedule_expression,
                "timezone": trigger.timezone,
                "next_run": trigger.next_fire_estimate.isoformat() if trigger.next_fire_estimate else None,
            },
        )
        return trigger

    async def trigger_manual_sync(self, source_id: str) -> RunRecord | None:
        """
        Start a sync now, outside the schedule.

        Works on paused sources. Returns the new RunRecord, or None when a
        run is already in flight for the source.

        Raises:
            SourceNotFoundError: If the source is unknown
        """
        self._require(source_id)
        return self.dispatch(source_id, RunTrigger.MANUAL)

    def get_status(self, source_id: str) -> ScheduleStatus:
        return self._reporter.get_status(source_id)

    def get_all_statuses(self) -> dict[str, ScheduleStatus]:
        return self._reporter.get_all_statuses()

    def get_stats(self) -> dict[str, Any]:
        return self._reporter.get_stats()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self,
        source_id: str,
        trigger: RunTrigger,
        retry_attempt: int = 0,
    ) -> RunRecord | None:
        """Acquire the guard for a source and run it in a background task."""
        source = self._executor.get(source_id)
        if source is None:
            logger.warning("Dispatch for unknown source", source_id=source_id, trigger=trigger.value)
            get_metrics().track_skipped_fire("unknown_source")
            return None

        run = self._guard.try_acquire(source, retry_attempt=retry_attempt, trigger=trigger)
        if run is None:
            logger.info(
                "Sync already running, skipping",
                source_id=source_id,
                trigger=trigger.value,
                retry_attempt=retry_attempt,
            )
            get_metrics().track_skipped_fire("already_running")
            return None

        task = asyncio.create_task(self._run(run), name=f"sync-{source_id}-{run.run_id}")
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _, run_id=run.run_id: self._tasks.pop(run_id, None))
        return run

    async def _run(self, run: RunRecord) -> None:
        try:
            await self._executor.execute(run)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error in sync run", source_id=run.source_id, run_id=run.run_id)

    def _cancel_reaped(self, run: RunRecord) -> None:
        task = self._tasks.get(run.run_id)
        if task is not None and not task.done():
            task.cancel()

    def _on_fire(self, source_id: str) -> None:
        self.dispatch(source_id, RunTrigger.SCHEDULED)

    def _on_retry(self, source_id: str, attempt: int) -> None:
        self.dispatch(source_id, RunTrigger.RETRY, retry_attempt=attempt)

    def _require(self, source_id: str) -> SourceDescriptor:
        source = self._executor.get(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source
