"""
Collector daemon entrypoint for the three-phase power analyzer.

Loads configuration, opens the SQLite time-series store, builds the analyzer
transport and the poll scheduler, and runs the scheduler until SIGTERM/SIGINT
sets a shared asyncio.Event.  The running cycle is allowed to finish; the
analyzer connection and the store are then closed.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-05: Replace poll/upload loops with PollScheduler (STORY-008)
- 2026-10-02: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from collector.src.health import HealthWriter
from collector.src.reconciler import ReconcileLimits
from collector.src.scheduler import PollScheduler
from collector.src.store import SqliteStore
from collector.src.transport import AnalyzerClient

if TYPE_CHECKING:
    from collector.src.config import CollectorSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the collector daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    pymodbus is capped at WARNING; its INFO output repeats every reconnect.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("pymodbus").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: CollectorSettings) -> None:
    """Log a config summary at startup."""
    logger.info(
        "Collector starting with config: "
        "analyzer_host=%s, analyzer_port=%s, analyzer_unit_id=%s, "
        "register_table=%s, poll_interval_s=%s, connect_timeout_s=%s, "
        "request_timeout_s=%s, max_delta_wh=%s, "
        "backoff=%s..%ss, register_map=%s, db_path=%s, health_path=%s",
        settings.analyzer_host,
        settings.analyzer_port,
        settings.analyzer_unit_id,
        settings.register_table,
        settings.poll_interval_s,
        settings.connect_timeout_s,
        settings.request_timeout_s,
        settings.max_delta_wh,
        settings.base_backoff_s,
        settings.max_backoff_s,
        settings.register_map_path or "built-in",
        settings.db_path,
        settings.health_path,
    )


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def build_client(settings: CollectorSettings) -> AnalyzerClient:
    """Create the analyzer transport from settings."""
    return AnalyzerClient(
        host=settings.analyzer_host,
        port=settings.analyzer_port,
        unit_id=settings.analyzer_unit_id,
        table=settings.register_table,
        connect_timeout_s=settings.connect_timeout_s,
        request_timeout_s=settings.request_timeout_s,
        inter_request_delay_ms=settings.inter_request_delay_ms,
    )


def build_scheduler(
    settings: CollectorSettings,
    *,
    client: AnalyzerClient,
    store: SqliteStore,
    health: HealthWriter | None,
) -> PollScheduler:
    """Create the poll scheduler from settings."""
    return PollScheduler(
        client=client,
        store=store,
        register_map=settings.register_map(),
        limits=ReconcileLimits(
            max_delta_wh=settings.max_delta_wh,
            poll_interval_s=settings.poll_interval_s,
        ),
        max_words=settings.max_words_per_request,
        max_gap_words=settings.max_gap_words,
        base_backoff_s=settings.base_backoff_s,
        max_backoff_s=settings.max_backoff_s,
        rebaseline_after=settings.rebaseline_after,
        health=health,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def run(settings: CollectorSettings, shutdown_event: asyncio.Event) -> None:
    """Open the store and run the scheduler until *shutdown_event* is set."""
    client = build_client(settings)
    health = HealthWriter(settings.health_path)

    async with SqliteStore(settings.db_path, retries=settings.store_retries) as store:
        scheduler = build_scheduler(settings, client=client, store=store, health=health)
        await scheduler.run(shutdown_event)
    logger.info("Shutdown complete")


async def async_main() -> None:
    """Async entrypoint: load config, install signal handlers, run.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from collector.src.config import CollectorSettings

    settings = CollectorSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    await run(settings, shutdown_event)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, finishing current cycle")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the collector daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
