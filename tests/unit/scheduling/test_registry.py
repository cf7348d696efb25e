"""
Unit tests for ScheduleRegistry.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fieldsync.kernel.errors import ValidationError
from fieldsync.scheduling.registry import ScheduleRegistry, next_fire_time, parse_schedule

pytestmark = pytest.mark.unit


# =============================================================================
# parse_schedule
# =============================================================================


class TestParseSchedule:
    def test_valid_expression(self):
        trigger = parse_schedule("*/15 * * * *", "UTC")
        now = datetime(2026, 1, 1, 0, 7, tzinfo=timezone.utc)

        assert next_fire_time(trigger, now) == datetime(2026, 1, 1, 0, 15, tzinfo=timezone.utc)

    def test_timezone_is_applied(self):
        trigger = parse_schedule("0 9 * * *", "America/New_York")
        now = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)

        assert next_fire_time(trigger, now).astimezone(timezone.utc).hour == 14

    @pytest.mark.parametrize("expression", ["", "   ", "not a cron", "* * *", "61 * * * *", None])
    def test_invalid_expression(self, expression):
        with pytest.raises(ValidationError) as exc_info:
            parse_schedule(expression, "UTC")
        assert exc_info.value.code == "schedule.invalid"

    def test_invalid_timezone(self):
        with pytest.raises(ValidationError):
            parse_schedule("*/5 * * * *", "Mars/Olympus")


# =============================================================================
# ScheduleRegistry with a mocked APScheduler
# =============================================================================


@pytest.fixture
def fired():
    return []


@pytest.fixture
def registry(fake_clock, fired):
    return ScheduleRegistry(MagicMock(), fired.append, misfire_grace_seconds=30, clock=fake_clock)


class TestRegister:
    def test_register_arms_coalesced_job(self, registry):
        trigger = registry.register("ds-1", "*/15 * * * *")

        kwargs = registry._scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "sync_ds-1"
        assert kwargs["replace_existing"] is True
        assert kwargs["coalesce"] is True
        assert kwargs["max_instances"] == 1
        assert kwargs["misfire_grace_time"] == 30
        assert trigger.next_fire_estimate == datetime(2026, 1, 1, 0, 15, tzinfo=timezone.utc)
        assert registry.is_scheduled("ds-1")

    def test_invalid_schedule_registers_nothing(self, registry):
        with pytest.raises(ValidationError):
            registry.register("ds-1", "bogus")

        registry._scheduler.add_job.assert_not_called()
        assert not registry.is_scheduled("ds-1")

    def test_register_paused(self, registry):
        trigger = registry.register("ds-1", "*/15 * * * *", paused=True)

        registry._scheduler.pause_job.assert_called_once_with("sync_ds-1")
        assert trigger.paused
        assert trigger.next_fire_estimate is None


class TestCancel:
    def test_cancel_existing(self, registry):
        registry.register("ds-1", "*/15 * * * *")

        assert registry.cancel("ds-1") is True
        registry._scheduler.remove_job.assert_called_with("sync_ds-1")
        assert registry.get("ds-1") is None

    def test_cancel_missing(self, registry):
        assert registry.cancel("ds-1") is False


class TestPauseResume:
    def test_pause_then_resume(self, registry):
        registry.register("ds-1", "*/15 * * * *")

        assert registry.pause("ds-1") is True
        assert registry.is_paused("ds-1")
        assert registry.resume("ds-1") is True
        assert not registry.is_paused("ds-1")
        assert registry.get("ds-1").next_fire_estimate is not None

    def test_pause_is_idempotent(self, registry):
        registry.register("ds-1", "*/15 * * * *")
        registry.pause("ds-1")

        assert registry.pause("ds-1") is False
        registry._scheduler.pause_job.assert_called_once()

    def test_resume_active_is_noop(self, registry):
        registry.register("ds-1", "*/15 * * * *")

        assert registry.resume("ds-1") is False
        registry._scheduler.resume_job.assert_not_called()

    def test_unknown_source(self, registry):
        assert registry.pause("ds-x") is False
        assert registry.resume("ds-x") is False


class TestUpdateSchedule:
    def test_update_reschedules_same_job(self, registry):
        registry.register("ds-1", "*/15 * * * *")

        trigger = registry.update_schedule("ds-1", "0 * * * *")

        registry._scheduler.add_job.assert_called_once()
        registry._scheduler.reschedule_job.assert_called_once()
        assert registry._scheduler.reschedule_job.call_args.args == ("sync_ds-1",)
        assert trigger.schedule_expression == "0 * * * *"
        assert trigger.next_fire_estimate == datetime(2026, 1, 1, 1, 0, tzinfo=timezone.utc)

    def test_update_keeps_paused(self, registry):
        registry.register("ds-1", "*/15 * * * *")
        registry.pause("ds-1")

        trigger = registry.update_schedule("ds-1", "0 * * * *")

        assert trigger.paused
        assert trigger.next_fire_estimate is None

    def test_invalid_update_keeps_old_schedule(self, registry):
        registry.register("ds-1", "*/15 * * * *")

        with pytest.raises(ValidationError):
            registry.update_schedule("ds-1", "every now and then")

        registry._scheduler.reschedule_job.assert_not_called()
        assert registry.get("ds-1").schedule_expression == "*/15 * * * *"

    def test_update_unknown_registers(self, registry):
        registry.update_schedule("ds-1", "0 * * * *")
        assert registry.is_scheduled("ds-1")


class TestFire:
    @pytest.mark.asyncio
    async def test_fire_updates_trigger_and_calls_back(self, registry, fired, fake_clock):
        registry.register("ds-1", "*/15 * * * *")
        fake_clock.advance(seconds=15 * 60)

        await registry._fire("ds-1")

        trigger = registry.get("ds-1")
        assert fired == ["ds-1"]
        assert trigger.fire_count == 1
        assert trigger.last_fired_at == fake_clock.now()
        assert trigger.next_fire_estimate == datetime(2026, 1, 1, 0, 30, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_stale_fire_after_cancel_is_ignored(self, registry, fired):
        registry.register("ds-1", "*/15 * * * *")
        registry.cancel("ds-1")

        await registry._fire("ds-1")

        assert fired == []

    @pytest.mark.asyncio
    async def test_fire_while_paused_is_ignored(self, registry, fired):
        registry.register("ds-1", "*/15 * * * *")
        registry.pause("ds-1")

        await registry._fire("ds-1")

        assert fired == []

    def test_record_failure(self, registry):
        registry.register("ds-1", "*/15 * * * *")
        registry.record_failure("ds-1")
        registry.record_failure("ds-unknown")

        assert registry.get("ds-1").failure_count == 1


# =============================================================================
# ScheduleRegistry with a live AsyncIOScheduler
# =============================================================================


@pytest.mark.asyncio
async def test_reschedule_leaves_exactly_one_job():
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.start()
    try:
        registry = ScheduleRegistry(scheduler, lambda _: None)
        registry.register("ds-1", "*/15 * * * *")
        registry.update_schedule("ds-1", "0 * * * *")
        registry.update_schedule("ds-1", "*/5 * * * *")

        jobs = [job for job in scheduler.get_jobs() if job.id == "sync_ds-1"]
        assert len(jobs) == 1
        assert jobs[0].next_run_time.minute % 5 == 0
    finally:
        scheduler.shutdown(wait=False)


@pytest.mark.asyncio
async def test_paused_job_has_no_next_run():
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.start()
    try:
        registry = ScheduleRegistry(scheduler, lambda _: None)
        registry.register("ds-1", "*/15 * * * *")
        registry.pause("ds-1")

        assert scheduler.get_job("sync_ds-1").next_run_time is None

        registry.resume("ds-1")
        assert scheduler.get_job("sync_ds-1").next_run_time is not None
    finally:
        scheduler.shutdown(wait=False)
