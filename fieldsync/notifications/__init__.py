"""Notification sinks for scheduler status events."""

from fieldsync.notifications.sinks import (
    LogNotificationSink,
    NotificationSink,
    RedisNotificationSink,
    SyncEvent,
    SyncEventType,
    build_notification_sink,
)

__all__ = [
    "LogNotificationSink",
    "NotificationSink",
    "RedisNotificationSink",
    "SyncEvent",
    "SyncEventType",
    "build_notification_sink",
]
