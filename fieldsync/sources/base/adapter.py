"""
Source Adapter Base Class

Provides the interface every external-system adapter implements, and the
closed registry the scheduler dispatches through.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from fieldsync.kernel.errors import UnsupportedSourceKindError, ValidationError
from fieldsync.kernel.time import utc_now
from fieldsync.sources.base.descriptor import SourceKind

logger = structlog.get_logger()


class SyncResult(BaseModel):
    """Summary of one successful sync, produced by an adapter."""

    records_synced: int = 0
    summary: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="allow")


class SourceAdapter(ABC):
    """
    Abstract base class for all source adapters.

    Each adapter must implement:
    - kind: The SourceKind it handles (e.g. SourceKind.SPREADSHEET)
    - sync_data: Pull and transform data for one source

    Adapters signal failure by raising; `AdapterError` is preferred, any
    other exception is wrapped into one by the executor.

    Example usage:
        class SheetsAdapter(SourceAdapter):
            kind = SourceKind.SPREADSHEET

            async def sync_data(self, source_id: str) -> SyncResult:
                rows = await pull_sheet(source_id)
                return SyncResult(records_synced=len(rows))
    """

    @property
    @abstractmethod
    def kind(self) -> SourceKind:
        """The source kind this adapter syncs."""
        pass

    @abstractmethod
    async def sync_data(self, source_id: str) -> SyncResult:
        """
        Pull data for a source.

        Args:
            source_id: Identifier of the source to sync

        Returns:
            SyncResult describing what was synced

        Raises:
            AdapterError: If the sync failed
        """
        pass


class AdapterRegistry:
    """
    Closed mapping of source kind to adapter.

    Built once at scheduler construction. Lookups for a kind without an
    adapter raise UnsupportedSourceKindError, so an unsupported source is
    rejected when it is registered instead of failing on its first fire.
    """

    def __init__(self, adapters: Iterable[SourceAdapter] = ()):
        self._adapters: dict[SourceKind, SourceAdapter] = {}
        for adapter in adapters:
            self._add(adapter)

    def _add(self, adapter: SourceAdapter) -> None:
        kind = SourceKind(adapter.kind)
        if kind in self._adapters:
            raise ValidationError(
                message=f"Duplicate adapter for source kind: {kind.value}",
                code="adapter.duplicate_kind",
            )
        self._adapters[kind] = adapter
        logger.debug("Registered source adapter", kind=kind.value, adapter=type(adapter).__name__)

    def for_kind(self, kind: SourceKind | str) -> SourceAdapter:
        try:
            return self._adapters[SourceKind(kind)]
        except (KeyError, ValueError):
            raise UnsupportedSourceKindError(str(getattr(kind, "value", kind))) from None

    def supports(self, kind: SourceKind | str) -> bool:
        try:
            return SourceKind(kind) in self._adapters
        except ValueError:
            return False

    @property
    def kinds(self) -> list[SourceKind]:
        return sorted(self._adapters, key=lambda k: k.value)

    def __len__(self) -> int:
        return len(self._adapters)
