#!/usr/bin/env python3
"""GitHub sync service: container entrypoint.

Runs the sync scheduler loops (regular sync, stale check, quota check, job
cleanup) until SIGTERM/SIGINT. Writes a health file after each successful
regular sync cycle for liveness checks.

Usage (Docker):
    CMD ["python3", "scripts/github_sync_service.py"]

Usage (manual):
    python3 scripts/github_sync_service.py

Environment:
    SUBAGENTS_SYNC_ON_START=true   Run a regular sync immediately (default: true)
    SYNC_INTERVAL=3600             Seconds between regular sync cycles
    See config.py for all settings.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from subagents.config import get_config
from subagents.logging_config import configure_logging
from subagents.service import build_services

logger = logging.getLogger("subagents.service.runner")

HEALTH_FILE = Path("/tmp/subagents-sync.health")


def write_health_file():
    """Write health file for Docker healthcheck."""
    try:
        HEALTH_FILE.write_text(str(int(time.time())))
    except OSError as e:
        logger.warning("health_file_write_failed", extra={"error": str(e)})


async def run_service() -> int:
    try:
        config = get_config()
    except Exception as e:
        logger.error("config_load_failed", extra={"error": str(e)})
        return 1

    services = build_services(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    sync_on_start = os.getenv("SUBAGENTS_SYNC_ON_START", "true").lower() == "true"
    logger.info(
        "sync_service_starting",
        extra={"interval": config.sync_interval, "sync_on_start": sync_on_start},
    )

    try:
        if sync_on_start:
            try:
                results = await services.scheduler.run_regular_sync()
            except Exception as e:
                logger.error("initial_sync_failed", extra={"error": str(e)})
            else:
                if all(r.success for r in results):
                    write_health_file()

        services.scheduler.start()
        services.quota_manager.start_persistence()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=config.sync_interval)
            except asyncio.TimeoutError:
                if services.scheduler.stats.failed_jobs == 0:
                    write_health_file()
    finally:
        logger.info(
            "sync_service_stopping",
            extra={"stats": services.scheduler.stats.to_dict()},
        )
        await services.aclose()
    return 0


def main():
    """Main service entry point."""
    configure_logging()
    sys.exit(asyncio.run(run_service()))


if __name__ == "__main__":
    main()
