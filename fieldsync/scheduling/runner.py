"""
Scheduler Process

Standalone process that restores every stored data source and keeps its
sync schedule running until SIGINT/SIGTERM.

Usage:
    python -m fieldsync.scheduling.runner

This process:
1. Loads descriptors from the source store (SQL when DATABASE_URL is set)
2. Instantiates the adapters listed in ADAPTER_CLASSES
3. Re-arms triggers and sweeps stuck runs
4. Broadcasts status events to the configured notification backend
"""

import asyncio
import logging
import signal
import sys
from importlib import import_module

import structlog

from fieldsync.config import Settings, get_settings
from fieldsync.db import close_db, init_db
from fieldsync.notifications.sinks import build_notification_sink
from fieldsync.scheduling.scheduler import SyncScheduler
from fieldsync.sources.base.adapter import AdapterRegistry, SourceAdapter
from fieldsync.sources.store import InMemorySourceStore, SourceStore, SqlSourceStore


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def load_adapter(path: str) -> SourceAdapter:
    """Instantiate an adapter from a "package.module:ClassName" path."""
    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Adapter path must look like 'package.module:ClassName', got {path!r}")
    adapter_cls = getattr(import_module(module_name), class_name)
    return adapter_cls()


def build_adapters(settings: Settings) -> AdapterRegistry:
    return AdapterRegistry(load_adapter(path) for path in settings.adapter_classes)


async def build_store(settings: Settings) -> SourceStore:
    if settings.database_url:
        await init_db(settings.database_url)
        return SqlSourceStore(table=settings.data_sources_table)
    logger.warning("DATABASE_URL not set, using in-memory source store")
    return InMemorySourceStore()


async def run(settings: Settings | None = None) -> None:
    """Run the scheduler until a shutdown signal arrives."""
    settings = settings or get_settings()

    adapters = build_adapters(settings)
    if not len(adapters):
        logger.error("No adapters configured. Set ADAPTER_CLASSES to run the scheduler.")
        sys.exit(1)

    store = await build_store(settings)
    scheduler = SyncScheduler.from_settings(
        adapters,
        store=store,
        sink=build_notification_sink(settings),
        settings=settings,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await scheduler.start()
        await stop.wait()
    finally:
        await scheduler.shutdown()
        if settings.database_url:
            await close_db()


def main() -> None:
    """Console entry point."""
    settings = get_settings()
    configure_logging(settings)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")


if __name__ == "__main__":
    main()
