"""
Retry Coordinator

Bounded retry-with-backoff for failed syncs. Retries are one-shot timers,
independent of the recurring triggers, so a pending retry neither consumes
nor is cancelled by the next regular fire. If both end up running at once
the execution guard skips the later one.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from pydantic import BaseModel

from fieldsync.config import Settings, get_settings
from fieldsync.kernel.time import Clock, utc_now
from fieldsync.monitoring import get_metrics
from fieldsync.notifications.sinks import SyncEventType

if TYPE_CHECKING:
    from fieldsync.scheduling.status import StatusReporter

logger = structlog.get_logger()


class RetryPolicy(BaseModel):
    """Exponential backoff: delay = base_delay * multiplier ** (attempt - 1)."""

    max_attempts: int = 3
    base_delay_seconds: float = 60.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError(f"Retry attempts start at 1, got {attempt}")
        return self.base_delay_seconds * self.multiplier ** (attempt - 1)

    def is_exhausted(self, attempt: int) -> bool:
        return attempt > self.max_attempts


class RetryPlan(BaseModel):
    """A scheduled retry, alive between a failure and the retry's fire."""

    source_id: str
    attempt: int
    delay_seconds: float
    max_attempts: int
    run_at: datetime
    reason: str | None = None


class RetryCoordinator:
    """
    Arms one-shot retry timers and reports exhaustion.

    At most one retry is pending per source: a new plan replaces the old
    one under the same job id.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        on_retry: Callable[[str, int], Any],
        reporter: StatusReporter,
        *,
        policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
    ):
        self._scheduler = scheduler
        self._on_retry = on_retry
        self._reporter = reporter
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._pending: dict[str, RetryPlan] = {}

    @staticmethod
    def job_id(source_id: str) -> str:
        return f"retry_{source_id}"

    def schedule_retry(
        self,
        source_id: str,
        attempt: int,
        *,
        max_attempts: int | None = None,
        base_delay_seconds: float | None = None,
        multiplier: float | None = None,
        kind: str = "unknown",
        reason: str | None = None,
    ) -> RetryPlan | None:
        """
        Arm retry `attempt` for a source, or report exhaustion.

        Returns the plan, or None when `attempt` exceeds the budget. After
        exhaustion the source stays in error until a regular fire or a
        manual trigger starts a fresh attempt chain.
        """
        policy = self.policy.model_copy(
            update={
                k: v
                for k, v in {
                    "max_attempts": max_attempts,
                    "base_delay_seconds": base_delay_seconds,
                    "multiplier": multiplier,
                }.items()
                if v is not None
            }
        )

        if policy.is_exhausted(attempt):
            self.discard(source_id)
            logger.error(
                "All retries exhausted",
                source_id=source_id,
                attempts=attempt - 1,
                max_attempts=policy.max_attempts,
                error=reason,
            )
            self._reporter.emit(
                SyncEventType.RETRY_EXHAUSTED,
                source_id,
                {
                    "message": "All retries exhausted",
                    "retry_count": attempt - 1,
                    "max_attempts": policy.max_attempts,
                    "final_error": reason,
                },
            )
            get_metrics().track_retry_exhausted(kind)
            return None

        delay = policy.delay_for(attempt)
        plan = RetryPlan(
            source_id=source_id,
            attempt=attempt,
            delay_seconds=delay,
            max_attempts=policy.max_attempts,
            run_at=self._clock() + timedelta(seconds=delay),
            reason=reason,
        )

        self._scheduler.add_job(
            self._fire_retry,
            trigger=DateTrigger(run_date=plan.run_at),
            args=[source_id, attempt],
            id=self.job_id(source_id),
            name=f"Retry {attempt} for {source_id}",
            replace_existing=True,
            misfire_grace_time=None,  # Late retries still run
        )
        self._pending[source_id] = plan

        logger.warning(
            "Scheduling sync retry",
            source_id=source_id,
            attempt=attempt,
            max_attempts=policy.max_attempts,
            delay_seconds=delay,
            error=reason,
        )
        self._reporter.emit(
            SyncEventType.RETRY_SCHEDULED,
            source_id,
            {
                "message": f"Retry {attempt}/{policy.max_attempts} scheduled",
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                "retry_in_seconds": delay,
                "run_at": plan.run_at.isoformat(),
                "original_error": reason,
            },
        )
        get_metrics().track_retry(kind)
        return plan.model_copy()

    async def _fire_retry(self, source_id: str, attempt: int) -> None:
        plan = self._pending.get(source_id)
        if plan is None or plan.attempt != attempt:
            return
        del self._pending[source_id]
        logger.info("Retry timer fired", source_id=source_id, attempt=attempt)
        self._on_retry(source_id, attempt)

    def pending(self, source_id: str) -> RetryPlan | None:
        plan = self._pending.get(source_id)
        return plan.model_copy() if plan else None

    def pending_all(self) -> dict[str, RetryPlan]:
        return {source_id: plan.model_copy() for source_id, plan in self._pending.items()}

    def discard(self, source_id: str) -> bool:
        """Drop a pending retry. Returns whether one existed."""
        plan = self._pending.pop(source_id, None)
        try:
            self._scheduler.remove_job(self.job_id(source_id))
        except JobLookupError:
            pass
        if plan is not None:
            logger.info("Discarded pending retry", source_id=source_id, attempt=plan.attempt)
        return plan is not None

    def cancel_all(self) -> int:
        source_ids = list(self._pending)
        for source_id in source_ids:
            self.discard(source_id)
        return len(source_ids)
