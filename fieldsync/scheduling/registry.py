"""
Schedule Registry

Owns one recurring trigger per source on the shared APScheduler clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel

from fieldsync.kernel.errors import ValidationError
from fieldsync.kernel.time import Clock, utc_now

logger = structlog.get_logger()


def parse_schedule(expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    Parse a five-field crontab expression in a timezone.

    Raises:
        ValidationError: If the expression or the timezone is malformed
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ValidationError(
            message="Schedule expression must be a non-empty crontab string",
            meta={"schedule_expression": expression},
        )
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=timezone)
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError(
            message=f"Invalid cron schedule: {expression} ({timezone})",
            meta={"schedule_expression": expression, "timezone": timezone, "reason": str(e)},
        ) from e


def next_fire_time(trigger: CronTrigger, now: datetime) -> datetime | None:
    """Next occurrence of `trigger` strictly after `now`."""
    # Cron fire times have one-second resolution; an exact match is not "after"
    return trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


class ScheduledTrigger(BaseModel):
    """Registry entry binding a source to a live recurring timer."""

    source_id: str
    schedule_expression: str
    timezone: str
    created_at: datetime
    last_fired_at: datetime | None = None
    next_fire_estimate: datetime | None = None
    fire_count: int = 0
    failure_count: int = 0
    paused: bool = False


class ScheduleRegistry:
    """
    Recurring triggers keyed by source id.

    Each fire calls `on_fire(source_id)` exactly once per occurrence.
    Jobs are coalesced with `max_instances=1`, so missed occurrences are
    dropped rather than queued.

    Replacing a trigger reuses the same job id: APScheduler swaps the job
    under its own lock, so the old and new timers never both fire.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        on_fire: Callable[[str], Any],
        *,
        misfire_grace_seconds: int = 60,
        clock: Clock = utc_now,
    ):
        self._scheduler = scheduler
        self._on_fire = on_fire
        self._misfire_grace_seconds = misfire_grace_seconds
        self._clock = clock
        self._triggers: dict[str, ScheduledTrigger] = {}
        self._crons: dict[str, CronTrigger] = {}

    @staticmethod
    def job_id(source_id: str) -> str:
        return f"sync_{source_id}"

    def register(
        self,
        source_id: str,
        schedule_expression: str,
        timezone: str = "UTC",
        *,
        paused: bool = False,
    ) -> ScheduledTrigger:
        """
        Arm a recurring trigger for a source, replacing any existing one.

        Raises:
            ValidationError: If the schedule is malformed; nothing is registered
        """
        cron = parse_schedule(schedule_expression, timezone)
        self._arm(source_id, cron)
        if paused:
            self._scheduler.pause_job(self.job_id(source_id))

        replaced = source_id in self._triggers
        trigger = ScheduledTrigger(
            source_id=source_id,
            schedule_expression=schedule_expression.strip(),
            timezone=timezone,
            created_at=self._clock(),
            next_fire_estimate=None if paused else next_fire_time(cron, self._clock()),
            paused=paused,
        )
        self._triggers[source_id] = trigger
        self._crons[source_id] = cron

        logger.info(
            "Scheduled sync trigger",
            source_id=source_id,
            schedule=trigger.schedule_expression,
            timezone=timezone,
            replaced=replaced,
            paused=paused,
        )
        return trigger.model_copy()

    def _arm(self, source_id: str, cron: CronTrigger) -> None:
        self._scheduler.add_job(
            self._fire,
            trigger=cron,
            args=[source_id],
            id=self.job_id(source_id),
            name=f"Sync {source_id}",
            replace_existing=True,
            coalesce=True,  # Skip missed runs
            max_instances=1,
            misfire_grace_time=self._misfire_grace_seconds,
        )

    def cancel(self, source_id: str) -> bool:
        """Destroy the trigger for a source. Returns whether one existed."""
        trigger = self._triggers.pop(source_id, None)
        self._crons.pop(source_id, None)
        self._remove_job(source_id)
        if trigger is None:
            return False
        logger.info("Cancelled sync trigger", source_id=source_id)
        return True

    def pause(self, source_id: str) -> bool:
        """Stop firing, keeping the configuration. Returns False if absent or already paused."""
        trigger = self._triggers.get(source_id)
        if trigger is None or trigger.paused:
            return False
        self._scheduler.pause_job(self.job_id(source_id))
        trigger.paused = True
        trigger.next_fire_estimate = None
        logger.info("Paused sync trigger", source_id=source_id)
        return True

    def resume(self, source_id: str) -> bool:
        """Start firing again. Returns False if absent or not paused."""
        trigger = self._triggers.get(source_id)
        if trigger is None or not trigger.paused:
            return False
        self._scheduler.resume_job(self.job_id(source_id))
        trigger.paused = False
        trigger.next_fire_estimate = next_fire_time(self._crons[source_id], self._clock())
        logger.info("Resumed sync trigger", source_id=source_id)
        return True

    def update_schedule(
        self,
        source_id: str,
        schedule_expression: str,
        timezone: str = "UTC",
    ) -> ScheduledTrigger:
        """
        Swap the schedule of a source in one step.

        An existing job keeps its id and only has its trigger replaced, so
        no occurrence is fired by both schedules. A paused trigger stays paused.

        Raises:
            ValidationError: If the new schedule is malformed; the old one stays armed
        """
        cron = parse_schedule(schedule_expression, timezone)
        previous = self._triggers.get(source_id)
        if previous is None:
            return self.register(source_id, schedule_expression, timezone)

        self._scheduler.reschedule_job(self.job_id(source_id), trigger=cron)
        if previous.paused:
            self._scheduler.pause_job(self.job_id(source_id))

        trigger = ScheduledTrigger(
            source_id=source_id,
            schedule_expression=schedule_expression.strip(),
            timezone=timezone,
            created_at=self._clock(),
            next_fire_estimate=None if previous.paused else next_fire_time(cron, self._clock()),
            paused=previous.paused,
        )
        self._triggers[source_id] = trigger
        self._crons[source_id] = cron

        logger.info(
            "Updated sync schedule",
            source_id=source_id,
            previous_schedule=previous.schedule_expression,
            schedule=trigger.schedule_expression,
            timezone=timezone,
        )
        return trigger.model_copy()

    async def _fire(self, source_id: str) -> None:
        trigger = self._triggers.get(source_id)
        if trigger is None or trigger.paused:
            # Stale fire racing a cancel or pause
            return
        now = self._clock()
        trigger.last_fired_at = now
        trigger.fire_count += 1
        trigger.next_fire_estimate = next_fire_time(self._crons[source_id], now)
        self._on_fire(source_id)

    def record_failure(self, source_id: str) -> None:
        trigger = self._triggers.get(source_id)
        if trigger is not None:
            trigger.failure_count += 1

    def refresh_estimates(self) -> int:
        """Recompute `next_fire_estimate` for every armed trigger. Best effort."""
        now = self._clock()
        refreshed = 0
        for source_id, trigger in self._triggers.items():
            if trigger.paused:
                trigger.next_fire_estimate = None
                continue
            trigger.next_fire_estimate = next_fire_time(self._crons[source_id], now)
            refreshed += 1
        return refreshed

    def get(self, source_id: str) -> ScheduledTrigger | None:
        trigger = self._triggers.get(source_id)
        return trigger.model_copy() if trigger else None

    def is_scheduled(self, source_id: str) -> bool:
        return source_id in self._triggers

    def is_paused(self, source_id: str) -> bool:
        trigger = self._triggers.get(source_id)
        return trigger is not None and trigger.paused

    def all(self) -> dict[str, ScheduledTrigger]:
        return {source_id: t.model_copy() for source_id, t in self._triggers.items()}

    def cancel_all(self) -> int:
        source_ids = list(self._triggers)
        for source_id in source_ids:
            self.cancel(source_id)
        return len(source_ids)

    def _remove_job(self, source_id: str) -> None:
        try:
            self._scheduler.remove_job(self.job_id(source_id))
        except JobLookupError:
            pass

    def __len__(self) -> int:
        return len(self._triggers)
