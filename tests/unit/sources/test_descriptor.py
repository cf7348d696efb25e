"""
Unit tests for SourceDescriptor and default cadences.
"""

import pytest

from fieldsync.sources.base.descriptor import (
    FALLBACK_SYNC_SCHEDULE,
    SourceDescriptor,
    SourceKind,
    SourceStatus,
    default_schedule_for,
)

pytestmark = pytest.mark.unit


class TestDefaultSchedules:
    """Default cadence per source kind."""

    @pytest.mark.parametrize(
        "kind,expected",
        [
            (SourceKind.SPREADSHEET, "*/15 * * * *"),
            (SourceKind.ACCOUNTING, "0 */2 * * *"),
            (SourceKind.DATABASE, "*/30 * * * *"),
            (SourceKind.STOREFRONT, "*/10 * * * *"),
            (SourceKind.PAYMENT, "*/5 * * * *"),
        ],
    )
    def test_default_per_kind(self, kind, expected):
        assert default_schedule_for(kind) == expected

    def test_fallback_is_hourly(self):
        assert FALLBACK_SYNC_SCHEDULE == "0 * * * *"


class TestSourceDescriptor:
    """Tests for SourceDescriptor model."""

    def test_defaults(self):
        source = SourceDescriptor(id="ds-1", kind="spreadsheet")

        assert source.status == SourceStatus.ACTIVE
        assert source.timezone == "UTC"
        assert source.sync_count == 0
        assert source.error_count == 0
        assert source.last_sync_result is None

    def test_effective_schedule_prefers_explicit(self):
        source = SourceDescriptor(id="ds-1", kind="payment", schedule_expression="0 6 * * *")
        assert source.effective_schedule == "0 6 * * *"

    def test_effective_schedule_falls_back_to_kind_default(self):
        source = SourceDescriptor(id="ds-1", kind="payment")
        assert source.effective_schedule == "*/5 * * * *"

    def test_display_name_falls_back_to_id(self):
        assert SourceDescriptor(id="ds-1", kind="payment").display_name == "ds-1"
        assert SourceDescriptor(id="ds-1", kind="payment", name="Stripe").display_name == "Stripe"

    def test_snapshot_is_independent(self):
        source = SourceDescriptor(id="ds-1", kind="database", last_sync_result={"tables": ["a"]})

        copy = source.snapshot()
        copy.last_sync_result["tables"].append("b")
        copy.sync_count = 7

        assert source.last_sync_result == {"tables": ["a"]}
        assert source.sync_count == 0

    def test_to_dict_serializes_enums(self):
        data = SourceDescriptor(id="ds-1", kind="database", status="error").to_dict()
        assert data["kind"] == "database"
        assert data["status"] == "error"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            SourceDescriptor(id="ds-1", kind="fax")
