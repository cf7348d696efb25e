"""
Sync Scheduling

Recurring, mutually exclusive, retried and swept sync runs per data source.
"""

from fieldsync.scheduling.executor import SyncExecutor, SyncOutcome
from fieldsync.scheduling.guard import ExecutionGuard, RunRecord, RunTrigger
from fieldsync.scheduling.registry import ScheduledTrigger, ScheduleRegistry, parse_schedule
from fieldsync.scheduling.retry import RetryCoordinator, RetryPlan, RetryPolicy
from fieldsync.scheduling.scheduler import SyncScheduler
from fieldsync.scheduling.status import ScheduleStatus, StatusReporter
from fieldsync.scheduling.sweeper import CleanupSweeper

__all__ = [
    "CleanupSweeper",
    "ExecutionGuard",
    "RetryCoordinator",
    "RetryPlan",
    "RetryPolicy",
    "RunRecord",
    "RunTrigger",
    "ScheduleRegistry",
    "ScheduleStatus",
    "ScheduledTrigger",
    "StatusReporter",
    "SyncExecutor",
    "SyncOutcome",
    "SyncScheduler",
    "parse_schedule",
]
