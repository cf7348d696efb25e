"""Base types shared by every source adapter."""

from fieldsync.sources.base.adapter import AdapterRegistry, SourceAdapter, SyncResult
from fieldsync.sources.base.descriptor import (
    DEFAULT_SYNC_SCHEDULES,
    SourceDescriptor,
    SourceKind,
    SourceStatus,
    default_schedule_for,
)

__all__ = [
    "AdapterRegistry",
    "SourceAdapter",
    "SyncResult",
    "DEFAULT_SYNC_SCHEDULES",
    "SourceDescriptor",
    "SourceKind",
    "SourceStatus",
    "default_schedule_for",
]
