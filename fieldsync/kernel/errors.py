from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class FieldSyncError(Exception):
    """Base typed error for the scheduler.

    Goals:
    - Stable `code` for programmatic handling by callers of the control surface.
    - Human-readable `message` for status views and logs.
    - Optional `meta` payload for debugging (safe-to-expose only).
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.meta = dict(meta or {})

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
        }
        if self.meta:
            payload["meta"] = self.meta
        return payload


class ValidationError(FieldSyncError):
    def __init__(
        self,
        *,
        message: str = "Invalid schedule",
        code: str = "schedule.invalid",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta=meta)


class UnsupportedSourceKindError(ValidationError):
    def __init__(self, kind: str, *, meta: dict[str, Any] | None = None):
        super().__init__(
            message=f"No adapter registered for source kind: {kind}",
            code="adapter.unsupported_kind",
            meta={"kind": kind, **(meta or {})},
        )
        self.kind = kind


class SourceNotFoundError(FieldSyncError):
    def __init__(self, source_id: str):
        super().__init__(
            code="source.not_found",
            message=f"Data source not found: {source_id}",
            meta={"source_id": source_id},
        )
        self.source_id = source_id


class AdapterError(FieldSyncError):
    """A sync attempt failed inside the adapter. Retryable."""

    def __init__(
        self,
        *,
        source_id: str,
        message: str = "Adapter sync failed",
        code: str = "adapter.failed",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta={"source_id": source_id, **(meta or {})})
        self.source_id = source_id


class SyncTimeoutError(AdapterError):
    def __init__(self, *, source_id: str, timeout_seconds: float):
        super().__init__(
            source_id=source_id,
            message=f"Sync exceeded its execution window of {timeout_seconds:g}s",
            code="adapter.timeout",
            meta={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class StuckTaskError(FieldSyncError):
    def __init__(self, *, source_id: str, run_id: str, running_seconds: float):
        super().__init__(
            code="run.stuck",
            message=f"Run {run_id} reaped after {running_seconds:.0f}s without completing",
            meta={"source_id": source_id, "run_id": run_id, "running_seconds": running_seconds},
        )
        self.source_id = source_id
        self.run_id = run_id
        self.running_seconds = running_seconds
