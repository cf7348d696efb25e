"""
Unit tests for ExecutionGuard.
"""

from datetime import timedelta
import threading

import pytest

from fieldsync.scheduling.guard import ExecutionGuard, RunTrigger
from fieldsync.sources.base.descriptor import SourceDescriptor

pytestmark = pytest.mark.unit


@pytest.fixture
def source():
    return SourceDescriptor(id="ds-1", kind="spreadsheet", name="Budget")


class TestTryAcquire:
    def test_first_acquire_creates_record(self, source, fake_clock):
        guard = ExecutionGuard(clock=fake_clock)

        run = guard.try_acquire(source, trigger=RunTrigger.MANUAL)

        assert run is not None
        assert run.source_id == "ds-1"
        assert run.started_at == fake_clock.now()
        assert run.retry_attempt == 0
        assert run.trigger == RunTrigger.MANUAL
        assert run.run_id.startswith("run_")
        assert "ds-1" in guard

    def test_second_acquire_is_refused_without_state_change(self, source):
        guard = ExecutionGuard()
        first = guard.try_acquire(source)

        assert guard.try_acquire(source, retry_attempt=2, trigger=RunTrigger.RETRY) is None
        assert guard.status("ds-1").run_id == first.run_id
        assert len(guard) == 1

    def test_sources_are_independent(self, source):
        guard = ExecutionGuard()
        other = SourceDescriptor(id="ds-2", kind="payment")

        assert guard.try_acquire(source) is not None
        assert guard.try_acquire(other) is not None
        assert {r.source_id for r in guard.running()} == {"ds-1", "ds-2"}

    def test_snapshot_is_detached_from_source(self, source):
        guard = ExecutionGuard()
        run = guard.try_acquire(source)

        source.name = "Renamed"

        assert run.source_snapshot.name == "Budget"

    def test_concurrent_acquires_admit_one(self, source):
        guard = ExecutionGuard()
        barrier = threading.Barrier(16)
        results = []

        def worker():
            barrier.wait()
            results.append(guard.try_acquire(source))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len([r for r in results if r is not None]) == 1


class TestRelease:
    def test_release_allows_reacquire(self, source):
        guard = ExecutionGuard()
        run = guard.try_acquire(source)

        assert guard.release("ds-1", run.run_id) is True
        assert guard.status("ds-1") is None
        assert guard.try_acquire(source) is not None

    def test_release_of_missing_record(self):
        assert ExecutionGuard().release("ds-1") is False

    def test_stale_run_id_does_not_release_newer_run(self, source):
        guard = ExecutionGuard()
        old = guard.try_acquire(source)
        guard.release("ds-1", old.run_id)
        new = guard.try_acquire(source)

        assert guard.release("ds-1", old.run_id) is False
        assert guard.is_current(new)
        assert not guard.is_current(old)

    def test_hold_releases_on_error(self, source):
        guard = ExecutionGuard()
        run = guard.try_acquire(source)

        with pytest.raises(RuntimeError):
            with guard.hold(run):
                raise RuntimeError("adapter blew up")

        assert "ds-1" not in guard

    def test_status_reports_elapsed_start(self, source, fake_clock):
        guard = ExecutionGuard(clock=fake_clock)
        guard.try_acquire(source)
        fake_clock.advance(timedelta(minutes=5))

        run = guard.status("ds-1")

        assert fake_clock.now() - run.started_at == timedelta(minutes=5)
