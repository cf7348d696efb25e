"""Data sources: descriptors, adapter interface and descriptor stores.

Keep imports in this module lightweight. `fieldsync.sources.store` pulls in
SQLAlchemy and is imported explicitly by the code that needs it.
"""

from fieldsync.sources.base import (
    AdapterRegistry,
    SourceAdapter,
    SourceDescriptor,
    SourceKind,
    SourceStatus,
    SyncResult,
)

__all__ = [
    "AdapterRegistry",
    "SourceAdapter",
    "SourceDescriptor",
    "SourceKind",
    "SourceStatus",
    "SyncResult",
]
