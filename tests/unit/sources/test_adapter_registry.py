"""
Unit tests for AdapterRegistry.
"""

import pytest

from fieldsync.kernel.errors import UnsupportedSourceKindError, ValidationError
from fieldsync.sources.base.adapter import AdapterRegistry, SyncResult
from fieldsync.sources.base.descriptor import SourceKind
from tests.support.adapters import ScriptedAdapter

pytestmark = pytest.mark.unit


def test_lookup_by_kind():
    sheets = ScriptedAdapter(SourceKind.SPREADSHEET)
    ledger = ScriptedAdapter(SourceKind.ACCOUNTING)
    registry = AdapterRegistry([sheets, ledger])

    assert registry.for_kind("spreadsheet") is sheets
    assert registry.for_kind(SourceKind.ACCOUNTING) is ledger
    assert registry.kinds == [SourceKind.ACCOUNTING, SourceKind.SPREADSHEET]
    assert len(registry) == 2


def test_unsupported_kind_raises():
    registry = AdapterRegistry([ScriptedAdapter(SourceKind.SPREADSHEET)])

    with pytest.raises(UnsupportedSourceKindError) as exc_info:
        registry.for_kind(SourceKind.PAYMENT)

    assert exc_info.value.kind == "payment"
    assert not registry.supports("payment")
    assert not registry.supports("fax")
    assert registry.supports("spreadsheet")


def test_duplicate_kind_rejected():
    with pytest.raises(ValidationError) as exc_info:
        AdapterRegistry([ScriptedAdapter(SourceKind.SPREADSHEET), ScriptedAdapter(SourceKind.SPREADSHEET)])

    assert exc_info.value.code == "adapter.duplicate_kind"


def test_sync_result_keeps_extra_fields():
    result = SyncResult(records_synced=3, cursor="abc")
    assert result.model_dump()["cursor"] == "abc"
    assert result.summary == {}
