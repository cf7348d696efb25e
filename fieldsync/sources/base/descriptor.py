"""
Source Descriptor

Durable description of one external data source: what kind of system it is,
when it syncs, and how its recent syncs went.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class SourceKind(str, Enum):
    """Supported external system types. One adapter per kind."""

    SPREADSHEET = "spreadsheet"
    ACCOUNTING = "accounting"
    STOREFRONT = "storefront"
    PAYMENT = "payment"
    DATABASE = "database"


class SourceStatus(str, Enum):
    """Lifecycle status of a data source."""

    ACTIVE = "active"
    SYNCING = "syncing"
    PAUSED = "paused"
    ERROR = "error"


# Default cadences for sources registered without an explicit schedule
DEFAULT_SYNC_SCHEDULES: dict[SourceKind, str] = {
    SourceKind.SPREADSHEET: "*/15 * * * *",  # every 15 minutes
    SourceKind.ACCOUNTING: "0 */2 * * *",    # every 2 hours
    SourceKind.DATABASE: "*/30 * * * *",     # every 30 minutes
    SourceKind.STOREFRONT: "*/10 * * * *",   # every 10 minutes
    SourceKind.PAYMENT: "*/5 * * * *",       # every 5 minutes
}

FALLBACK_SYNC_SCHEDULE = "0 * * * *"


def default_schedule_for(kind: SourceKind) -> str:
    return DEFAULT_SYNC_SCHEDULES.get(kind, FALLBACK_SYNC_SCHEDULE)


class SourceDescriptor(BaseModel):
    """
    One external data source as seen by the scheduler.

    The scheduler reads these at startup and writes status/counter changes
    back after every run. Persistence itself belongs to a SourceStore.
    """

    # Identity
    id: str
    kind: SourceKind
    name: str | None = None

    # Schedule (None = default cadence for the kind)
    schedule_expression: str | None = None
    timezone: str = "UTC"

    # Status
    status: SourceStatus = SourceStatus.ACTIVE
    last_error: str | None = None

    # Counters
    last_sync_at: datetime | None = None
    sync_count: int = 0
    error_count: int = 0

    # Opaque summary produced by the adapter
    last_sync_result: dict[str, Any] | None = None

    updated_at: datetime | None = None

    @property
    def effective_schedule(self) -> str:
        return self.schedule_expression or default_schedule_for(self.kind)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def snapshot(self) -> "SourceDescriptor":
        """Deep copy, safe to hand to another component."""
        return self.model_copy(deep=True)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence."""
        return self.model_dump(mode="json")
