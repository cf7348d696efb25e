"""
Sync Executor

Runs one adapter invocation for an acquired RunRecord, bounded by the
per-kind execution window, and applies the outcome to the source's
descriptor.
"""

from __future__ import annotations

import asyncio
from typing import Any, Literal

import structlog
from pydantic import BaseModel

from fieldsync.kernel.errors import (
    AdapterError,
    FieldSyncError,
    SyncTimeoutError,
    ValidationError,
)
from fieldsync.kernel.time import Clock, utc_now
from fieldsync.monitoring import get_metrics
from fieldsync.notifications.sinks import SyncEventType
from fieldsync.scheduling.guard import ExecutionGuard, RunRecord
from fieldsync.scheduling.registry import ScheduleRegistry
from fieldsync.scheduling.retry import RetryCoordinator, RetryPlan
from fieldsync.scheduling.status import StatusReporter
from fieldsync.sources.base.adapter import AdapterRegistry, SyncResult
from fieldsync.sources.base.descriptor import SourceDescriptor, SourceKind, SourceStatus
from fieldsync.sources.store import SourceStore

logger = structlog.get_logger()

INTERRUPTED_ERROR = "Sync interrupted before completion"


class SyncOutcome(BaseModel):
    """What happened to one run."""

    run_id: str
    source_id: str
    status: Literal["success", "failed", "timeout", "discarded"]
    retry_attempt: int = 0
    duration_seconds: float = 0.0
    records_synced: int = 0
    error: str | None = None
    error_code: str | None = None
    retry: RetryPlan | None = None


class SyncExecutor:
    """
    Executes acquired runs and owns the live descriptor of every source.

    The descriptor cache is the scheduler's view of each source; every
    change is written through to the SourceStore. A store failure is
    logged and never fails the run.
    """

    def __init__(
        self,
        adapters: AdapterRegistry,
        guard: ExecutionGuard,
        store: SourceStore,
        reporter: StatusReporter,
        *,
        registry: ScheduleRegistry | None = None,
        retries: RetryCoordinator | None = None,
        timeout_seconds: float = 1800.0,
        timeout_overrides: dict[str, float] | None = None,
        clock: Clock = utc_now,
    ):
        self._adapters = adapters
        self._guard = guard
        self._store = store
        self._reporter = reporter
        self._registry = registry
        self._retries = retries
        self._timeout_seconds = timeout_seconds
        self._timeout_overrides = dict(timeout_overrides or {})
        self._clock = clock
        self._descriptors: dict[str, SourceDescriptor] = {}

    # ------------------------------------------------------------------
    # Descriptor cache
    # ------------------------------------------------------------------

    def track(self, descriptor: SourceDescriptor) -> None:
        self._descriptors[descriptor.id] = descriptor.snapshot()

    def forget(self, source_id: str) -> SourceDescriptor | None:
        return self._descriptors.pop(source_id, None)

    def get(self, source_id: str) -> SourceDescriptor | None:
        descriptor = self._descriptors.get(source_id)
        return descriptor.snapshot() if descriptor else None

    def descriptors(self) -> list[SourceDescriptor]:
        return [d.snapshot() for d in self._descriptors.values()]

    async def update(self, source_id: str, **fields: Any) -> SourceDescriptor | None:
        """Apply field changes to a tracked descriptor and persist it."""
        descriptor = self._descriptors.get(source_id)
        if descriptor is None:
            return None
        for name, value in fields.items():
            setattr(descriptor, name, value)
        await self.persist(descriptor)
        return descriptor.snapshot()

    async def persist(self, descriptor: SourceDescriptor) -> None:
        try:
            await self._store.save(descriptor)
        except Exception as e:
            logger.warning(
                "Failed to persist source descriptor",
                source_id=descriptor.id,
                status=descriptor.status.value,
                error=str(e),
            )

    def timeout_for(self, kind: SourceKind | str) -> float:
        kind = getattr(kind, "value", kind)
        return self._timeout_overrides.get(kind, self._timeout_seconds)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, run: RunRecord) -> SyncOutcome:
        """
        Run the adapter for an acquired RunRecord.

        The record is released when this returns, whatever the outcome. If
        the sweeper reaped the run meanwhile, the late outcome is discarded
        and nothing is written.
        """
        with self._guard.hold(run):
            return await self._execute(run)

    async def _execute(self, run: RunRecord) -> SyncOutcome:
        source_id = run.source_id
        source = self._descriptors.get(source_id)
        if source is None:
            logger.warning("Source no longer tracked, dropping run", source_id=source_id, run_id=run.run_id)
            return SyncOutcome(
                run_id=run.run_id,
                source_id=source_id,
                status="discarded",
                retry_attempt=run.retry_attempt,
            )

        kind = source.kind.value
        timeout = self.timeout_for(source.kind)
        started_at = self._clock()

        if not self._is_paused(source_id):
            source.status = SourceStatus.SYNCING
        await self.persist(source)

        logger.info(
            "Starting sync",
            source_id=source_id,
            run_id=run.run_id,
            kind=kind,
            trigger=run.trigger.value,
            retry_attempt=run.retry_attempt,
        )
        self._reporter.emit(
            SyncEventType.SYNC_STARTED,
            source_id,
            {
                "run_id": run.run_id,
                "name": source.display_name,
                "kind": kind,
                "trigger": run.trigger.value,
                "retry_attempt": run.retry_attempt,
            },
        )

        result: SyncResult | None = None
        error: FieldSyncError | None = None
        window = asyncio.timeout(timeout)
        try:
            adapter = self._adapters.for_kind(source.kind)
            async with window:
                result = await adapter.sync_data(source_id)
            if not isinstance(result, SyncResult):
                result = SyncResult.model_validate(result or {})
        except asyncio.CancelledError:
            if self._guard.is_current(run):
                source.status = SourceStatus.PAUSED if self._is_paused(source_id) else SourceStatus.ERROR
                source.last_error = INTERRUPTED_ERROR
                await self.persist(source)
            logger.warning("Sync interrupted", source_id=source_id, run_id=run.run_id)
            raise
        except FieldSyncError as e:
            error = e
        except Exception as e:
            # An adapter's own TimeoutError is an adapter failure, not the window expiring
            if isinstance(e, TimeoutError) and window.expired():
                error = SyncTimeoutError(source_id=source_id, timeout_seconds=timeout)
            else:
                error = AdapterError(
                    source_id=source_id,
                    message=str(e) or type(e).__name__,
                    meta={"exception": type(e).__name__},
                )

        duration = (self._clock() - started_at).total_seconds()

        if not self._guard.is_current(run):
            logger.warning(
                "Discarding outcome of reaped run",
                source_id=source_id,
                run_id=run.run_id,
                duration_seconds=duration,
            )
            return SyncOutcome(
                run_id=run.run_id,
                source_id=source_id,
                status="discarded",
                retry_attempt=run.retry_attempt,
                duration_seconds=duration,
            )

        if error is None:
            return await self._on_success(run, source, result, duration)
        return await self._on_failure(run, source, error, duration)

    async def _on_success(
        self,
        run: RunRecord,
        source: SourceDescriptor,
        result: SyncResult,
        duration: float,
    ) -> SyncOutcome:
        source_id = source.id
        source.last_sync_at = self._clock()
        source.sync_count += 1
        source.error_count = 0
        source.last_error = None
        source.last_sync_result = result.model_dump(mode="json")
        source.status = SourceStatus.PAUSED if self._is_paused(source_id) else SourceStatus.ACTIVE
        await self.persist(source)

        if self._retries is not None:
            self._retries.discard(source_id)

        logger.info(
            "Sync completed",
            source_id=source_id,
            run_id=run.run_id,
            records_synced=result.records_synced,
            duration_seconds=duration,
        )
        self._reporter.emit(
            SyncEventType.SYNC_COMPLETED,
            source_id,
            {
                "run_id": run.run_id,
                "name": source.display_name,
                "kind": source.kind.value,
                "records_synced": result.records_synced,
                "duration_seconds": duration,
                "retry_attempt": run.retry_attempt,
                "summary": result.summary,
            },
        )
        get_metrics().track_sync_run(source.kind.value, "success", duration)

        return SyncOutcome(
            run_id=run.run_id,
            source_id=source_id,
            status="success",
            retry_attempt=run.retry_attempt,
            duration_seconds=duration,
            records_synced=result.records_synced,
        )

    async def _on_failure(
        self,
        run: RunRecord,
        source: SourceDescriptor,
        error: FieldSyncError,
        duration: float,
    ) -> SyncOutcome:
        source_id = source.id
        paused = self._is_paused(source_id)
        timed_out = isinstance(error, SyncTimeoutError)

        source.error_count += 1
        source.last_error = error.message
        source.status = SourceStatus.PAUSED if paused else SourceStatus.ERROR
        await self.persist(source)

        if self._registry is not None:
            self._registry.record_failure(source_id)

        logger.warning(
            "Sync failed",
            source_id=source_id,
            run_id=run.run_id,
            error=error.message,
            code=error.code,
            retry_attempt=run.retry_attempt,
            duration_seconds=duration,
        )
        self._reporter.emit(
            SyncEventType.SYNC_FAILED,
            source_id,
            {
                "run_id": run.run_id,
                "name": source.display_name,
                "kind": source.kind.value,
                "error": error.message,
                "code": error.code,
                "error_count": source.error_count,
                "retry_attempt": run.retry_attempt,
            },
        )
        get_metrics().track_sync_run(source.kind.value, "timeout" if timed_out else "error", duration)

        plan: RetryPlan | None = None
        if self._should_retry(source_id, error):
            plan = self._retries.schedule_retry(
                source_id,
                run.retry_attempt + 1,
                kind=source.kind.value,
                reason=error.message,
            )

        return SyncOutcome(
            run_id=run.run_id,
            source_id=source_id,
            status="timeout" if timed_out else "failed",
            retry_attempt=run.retry_attempt,
            duration_seconds=duration,
            error=error.message,
            error_code=error.code,
            retry=plan,
        )

    def _should_retry(self, source_id: str, error: FieldSyncError) -> bool:
        if self._retries is None or isinstance(error, ValidationError):
            return False
        if self._registry is None:
            return True
        return self._registry.is_scheduled(source_id) and not self._registry.is_paused(source_id)

    def _is_paused(self, source_id: str) -> bool:
        return self._registry is not None and self._registry.is_paused(source_id)
