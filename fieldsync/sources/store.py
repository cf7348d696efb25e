"""
Source Store

Durable storage of source descriptors. The scheduler reads descriptors at
startup and writes status/counter changes back after every transition; it
never owns persistence itself.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

import structlog
from sqlalchemy import text

from fieldsync.db.client import get_db_session
from fieldsync.kernel.time import coerce_utc, utc_now
from fieldsync.sources.base.descriptor import SourceDescriptor

logger = structlog.get_logger()

_TABLE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


class SourceStore(ABC):
    """Persistence interface for source descriptors."""

    @abstractmethod
    async def load(self, source_id: str) -> SourceDescriptor | None:
        """Load one descriptor, or None if it does not exist."""

    @abstractmethod
    async def save(self, descriptor: SourceDescriptor) -> None:
        """Insert or update a descriptor."""

    @abstractmethod
    async def list_all(self) -> list[SourceDescriptor]:
        """Load every stored descriptor."""

    @abstractmethod
    async def delete(self, source_id: str) -> bool:
        """Remove a descriptor. Returns whether one existed."""


class InMemorySourceStore(SourceStore):
    """Process-local store. Hands out copies so callers never share state with it."""

    def __init__(self, descriptors: list[SourceDescriptor] | None = None):
        self._descriptors: dict[str, SourceDescriptor] = {}
        for descriptor in descriptors or []:
            self._descriptors[descriptor.id] = descriptor.snapshot()

    async def load(self, source_id: str) -> SourceDescriptor | None:
        descriptor = self._descriptors.get(source_id)
        return descriptor.snapshot() if descriptor else None

    async def save(self, descriptor: SourceDescriptor) -> None:
        stored = descriptor.snapshot()
        stored.updated_at = utc_now()
        self._descriptors[descriptor.id] = stored

    async def list_all(self) -> list[SourceDescriptor]:
        return [d.snapshot() for d in self._descriptors.values()]

    async def delete(self, source_id: str) -> bool:
        return self._descriptors.pop(source_id, None) is not None


class SqlSourceStore(SourceStore):
    """Database-backed descriptor storage (one row per source)."""

    _COLUMNS = (
        "id, kind, name, schedule_expression, timezone, status, last_error, "
        "last_sync_at, sync_count, error_count, last_sync_result, updated_at"
    )

    def __init__(self, table: str = "data_sources"):
        if not _TABLE_NAME_RE.fullmatch(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self._table = table

    async def load(self, source_id: str) -> SourceDescriptor | None:
        async with get_db_session() as session:
            rows = await session.execute(
                text(f"SELECT {self._COLUMNS} FROM {self._table} WHERE id = :id"),
                {"id": source_id},
            )
            row = rows.mappings().first()
        return self._from_row(row) if row else None

    async def list_all(self) -> list[SourceDescriptor]:
        async with get_db_session() as session:
            rows = await session.execute(
                text(f"SELECT {self._COLUMNS} FROM {self._table} ORDER BY id")
            )
            results = rows.mappings().all()

        descriptors: list[SourceDescriptor] = []
        for row in results:
            try:
                descriptors.append(self._from_row(row))
            except ValueError as e:
                logger.warning("Skipping unreadable data source row", source_id=row.get("id"), error=str(e))
        return descriptors

    async def save(self, descriptor: SourceDescriptor) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    f"""
                    INSERT INTO {self._table} (
                        id, kind, name, schedule_expression, timezone, status, last_error,
                        last_sync_at, sync_count, error_count, last_sync_result,
                        created_at, updated_at
                    ) VALUES (
                        :id, :kind, :name, :schedule_expression, :timezone, :status, :last_error,
                        :last_sync_at, :sync_count, :error_count, CAST(:last_sync_result AS JSONB),
                        NOW(), NOW()
                    )
                    ON CONFLICT (id)
                    DO UPDATE SET
                        kind = EXCLUDED.kind,
                        name = EXCLUDED.name,
                        schedule_expression = EXCLUDED.schedule_expression,
                        timezone = EXCLUDED.timezone,
                        status = EXCLUDED.status,
                        last_error = EXCLUDED.last_error,
                        last_sync_at = EXCLUDED.last_sync_at,
                        sync_count = EXCLUDED.sync_count,
                        error_count = EXCLUDED.error_count,
                        last_sync_result = EXCLUDED.last_sync_result,
                        updated_at = NOW()
                    """
                ),
                self._to_params(descriptor),
            )

    async def delete(self, source_id: str) -> bool:
        async with get_db_session() as session:
            result = await session.execute(
                text(f"DELETE FROM {self._table} WHERE id = :id"),
                {"id": source_id},
            )
        return bool(result.rowcount)

    @staticmethod
    def _to_params(descriptor: SourceDescriptor) -> dict[str, Any]:
        return {
            "id": descriptor.id,
            "kind": descriptor.kind.value,
            "name": descriptor.name,
            "schedule_expression": descriptor.schedule_expression,
            "timezone": descriptor.timezone,
            "status": descriptor.status.value,
            "last_error": descriptor.last_error,
            "last_sync_at": descriptor.last_sync_at,
            "sync_count": descriptor.sync_count,
            "error_count": descriptor.error_count,
            "last_sync_result": (
                json.dumps(descriptor.last_sync_result, default=str)
                if descriptor.last_sync_result is not None
                else None
            ),
        }

    @staticmethod
    def _from_row(row: Any) -> SourceDescriptor:
        result = row.get("last_sync_result")
        if isinstance(result, str):
            result = json.loads(result)
        last_sync_at = row.get("last_sync_at")
        updated_at = row.get("updated_at")
        return SourceDescriptor(
            id=str(row["id"]),
            kind=row["kind"],
            name=row.get("name"),
            schedule_expression=row.get("schedule_expression"),
            timezone=row.get("timezone") or "UTC",
            status=row.get("status") or "active",
            last_error=row.get("last_error"),
            last_sync_at=coerce_utc(last_sync_at) if last_sync_at else None,
            sync_count=row.get("sync_count") or 0,
            error_count=row.get("error_count") or 0,
            last_sync_result=result,
            updated_at=coerce_utc(updated_at) if updated_at else None,
        )
