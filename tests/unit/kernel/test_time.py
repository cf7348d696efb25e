from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fieldsync.kernel.time import UTC, coerce_utc, is_tz_aware, utc_now


@pytest.mark.unit
def test_utc_now_is_tz_aware_utc():
    now = utc_now()
    assert is_tz_aware(now)
    assert now.utcoffset() == timedelta(0)


@pytest.mark.unit
def test_coerce_utc_converts_offsets():
    dt = datetime(2026, 2, 10, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    assert coerce_utc(dt) == datetime(2026, 2, 10, 12, 0, 0, tzinfo=UTC)


@pytest.mark.unit
def test_coerce_utc_assumes_naive_is_utc_by_default():
    assert coerce_utc(datetime(2026, 1, 1)).tzinfo == UTC


@pytest.mark.unit
def test_coerce_utc_can_reject_naive():
    with pytest.raises(ValueError):
        coerce_utc(datetime(2026, 1, 1), assume_naive_is_utc=False)
