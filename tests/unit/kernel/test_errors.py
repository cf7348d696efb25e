from __future__ import annotations

import pytest

from fieldsync.kernel.errors import (
    AdapterError,
    FieldSyncError,
    SourceNotFoundError,
    StuckTaskError,
    SyncTimeoutError,
    UnsupportedSourceKindError,
    ValidationError,
)


@pytest.mark.unit
def test_error_code_must_be_dotted_lowercase():
    with pytest.raises(ValueError):
        FieldSyncError(code="Bad Code", message="x")


@pytest.mark.unit
def test_public_dict_includes_meta_only_when_present():
    assert ValidationError().to_public_dict() == {"detail": "Invalid schedule", "code": "schedule.invalid"}

    payload = SourceNotFoundError("ds-1").to_public_dict()
    assert payload["code"] == "source.not_found"
    assert payload["meta"] == {"source_id": "ds-1"}


@pytest.mark.unit
def test_unsupported_kind_is_a_validation_error():
    err = UnsupportedSourceKindError("fax")
    assert isinstance(err, ValidationError)
    assert err.code == "adapter.unsupported_kind"
    assert err.kind == "fax"


@pytest.mark.unit
def test_timeout_is_a_retryable_adapter_error():
    err = SyncTimeoutError(source_id="ds-1", timeout_seconds=30)
    assert isinstance(err, AdapterError)
    assert err.code == "adapter.timeout"
    assert "30s" in err.message
    assert err.meta == {"source_id": "ds-1", "timeout_seconds": 30}


@pytest.mark.unit
def test_stuck_task_error_names_the_run():
    err = StuckTaskError(source_id="ds-1", run_id="run_abc", running_seconds=7300.4)
    assert err.code == "run.stuck"
    assert "run_abc" in err.message
    assert "7300s" in err.message
