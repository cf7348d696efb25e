"""
Sync Event Broadcasting

Push channels that inform external observers of scheduler status
transitions. Delivery is fire-and-forget: sinks never acknowledge.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, Field

from fieldsync.config import Settings, get_settings
from fieldsync.kernel.time import utc_now

logger = structlog.get_logger()


class SyncEventType(str, Enum):
    """Every state transition the scheduler reports."""

    SCHEDULE_CREATED = "schedule_created"
    SCHEDULE_UPDATED = "schedule_updated"
    SCHEDULE_CANCELLED = "schedule_cancelled"
    SCHEDULE_PAUSED = "schedule_paused"
    SCHEDULE_RESUMED = "schedule_resumed"
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_EXHAUSTED = "retry_exhausted"
    STUCK_TASK_REAPED = "stuck_task_reaped"


class SyncEvent(BaseModel):
    """Status event as it goes out on the wire."""

    event_type: str
    source_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class NotificationSink(ABC):
    """Push channel for status events."""

    @abstractmethod
    async def publish(self, event_type: str, source_id: str, payload: dict[str, Any]) -> None:
        """Deliver one event. May raise; callers log and move on."""

    async def close(self) -> None:
        """Release any connection held by the sink."""


class LogNotificationSink(NotificationSink):
    """Writes events to the structured log. Default when no broker is configured."""

    async def publish(self, event_type: str, source_id: str, payload: dict[str, Any]) -> None:
        logger.info("Sync event", event_type=event_type, source_id=source_id, **payload)


class RedisNotificationSink(NotificationSink):
    """Broadcasts sync events to subscribers via Redis pub/sub."""

    def __init__(self, redis_url: str, channel: str = "sync_events"):
        self._redis_url = redis_url
        self._channel = channel
        self._redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url)
        return self._redis

    async def publish(self, event_type: str, source_id: str, payload: dict[str, Any]) -> None:
        event = SyncEvent(event_type=event_type, source_id=source_id, payload=payload)
        r = await self._get_redis()
        await r.publish(self._channel, event.model_dump_json())
        logger.debug("Published sync event", event_type=event_type, source_id=source_id)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_notification_sink(settings: Settings | None = None) -> NotificationSink:
    """Build the sink selected by `notifications_backend`."""
    settings = settings or get_settings()
    if settings.notifications_backend == "redis":
        return RedisNotificationSink(str(settings.redis_url), channel=settings.sync_events_channel)
    return LogNotificationSink()
