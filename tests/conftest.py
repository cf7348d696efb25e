"""
Test Configuration and Fixtures

Provides shared fixtures and scheduler factories for the test suite.
"""

import os

import pytest
import pytest_asyncio

# Set test environment variables before importing the package.
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("NOTIFICATIONS_BACKEND", "log")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("METRICS_ENABLED", "true")


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (real scheduler clock)")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")


def pytest_collection_modifyitems(config, items):
    """
    Auto-assign tier markers so we can run:
    - pytest -m unit
    - pytest -m integration

    Convention:
    - tests/integration/** => integration
    - everything else      => unit
    """
    for item in items:
        path = str(getattr(item, "fspath", ""))
        # If the test is already explicitly tiered, do not override.
        if item.get_closest_marker("integration") or item.get_closest_marker("unit"):
            continue
        if "/tests/integration/" in path:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fake_clock():
    """Deterministic clock for tests."""
    from tests.support.clock import FakeClock

    return FakeClock.fixed()


@pytest.fixture
def recording_sink():
    from tests.support.sinks import RecordingSink

    return RecordingSink()


@pytest.fixture
def settings():
    from fieldsync.config import Settings

    return Settings(_env_file=None)


@pytest_asyncio.fixture
async def make_scheduler(recording_sink, settings):
    """
    Factory for started SyncSchedulers with fast retries.

    Every scheduler built here is shut down at teardown.
    """
    from fieldsync.scheduling.retry import RetryPolicy
    from fieldsync.scheduling.scheduler import SyncScheduler
    from fieldsync.sources.store import InMemorySourceStore

    created = []

    async def _make(adapters, **kwargs):
        kwargs.setdefault("store", InMemorySourceStore())
        kwargs.setdefault("sink", recording_sink)
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay_seconds=0.01, multiplier=2.0))
        kwargs.setdefault("shutdown_grace_seconds", 0.5)
        kwargs.setdefault("settings", settings)
        scheduler = SyncScheduler(adapters, **kwargs)
        await scheduler.start()
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        if scheduler.is_running:
            await scheduler.shutdown()
