#!/usr/bin/env python3
"""gitpulse worker service: container entrypoint.

Drains the scheduler (job runs, blocked-job resumes, webhook processing,
downstream triggers) and runs the periodic sweeps in a loop. Exposes
Prometheus metrics and writes a health file for liveness checks.

Usage (Docker):
    CMD ["python3", "scripts/gitpulse_service.py"]

Usage (manual):
    python3 scripts/gitpulse_service.py

Environment:
    GITPULSE_CRON_SYNC=true    : Request a cron sync for every installation each cycle
    SWEEP_INTERVAL_SECONDS=60  : Seconds between sweep cycles
    METRICS_PORT=9464          : Prometheus exporter port
    See config.py for all variables.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path

from prometheus_client import start_http_server

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from gitpulse.config import get_config
from gitpulse.logging_config import configure_logging
from gitpulse.pipeline import Pipeline, build_pipeline

logger = logging.getLogger("gitpulse.service")

HEALTH_FILE = Path("/tmp/gitpulse.health")
SHUTDOWN_REQUESTED = False


def handle_signal(signum, frame):
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    global SHUTDOWN_REQUESTED
    logger.info("Shutdown signal received (signal=%d), finishing current cycle...", signum)
    SHUTDOWN_REQUESTED = True


async def run_cycle(pipeline: Pipeline, cron_sync: bool) -> bool:
    """Run one service cycle: scheduler drain, sweeps, optional cron sync.

    Due calls run before the sweeps, so a resume that is on time is never
    doubled by the stuck-job sweep.

    Returns:
        True if the cycle completed without fatal errors, False otherwise.
    """
    cycle_ok = True

    try:
        ran = await pipeline.scheduler.run_due()
        if ran:
            logger.info("Scheduler drained: %d call(s)", ran)
    except Exception as e:
        logger.error("Scheduler drain failed: %s", e)
        cycle_ok = False

    try:
        sweeps = pipeline.run_sweeps()
        logger.info(
            "Sweeps complete: zombies=%d, resumed=%d, batches_finalized=%d, webhooks=%d",
            sweeps["zombies_failed"],
            sweeps["blocked_resumed"],
            sweeps["batches"]["finalized"],
            sum(sweeps["webhooks"].values()),
        )
    except Exception as e:
        logger.error("Sweeps failed: %s", e)
        cycle_ok = False

    if cron_sync:
        try:
            pipeline.sync.run_catch_up_sync()
            pipeline.sync.run_cron_sync()
        except Exception as e:
            logger.error("Cron sync failed: %s", e)
            cycle_ok = False

    return cycle_ok


def write_health_file():
    """Write health file for Docker healthcheck."""
    try:
        HEALTH_FILE.write_text(str(int(time.time())))
    except OSError as e:
        logger.warning("Failed to write health file: %s", e)


def main():
    """Main service loop."""
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        config = get_config()
    except Exception as e:
        logging.basicConfig(level="INFO")
        logger.error("Failed to load config: %s", e)
        sys.exit(1)

    configure_logging(config.log_level, config.log_format)

    if not config.github_app_id:
        logger.error("GITHUB_APP_ID is not set: exiting")
        sys.exit(1)

    pipeline = build_pipeline(config)
    start_http_server(config.metrics_port)

    interval = config.sweep_interval_seconds
    cron_sync = os.getenv("GITPULSE_CRON_SYNC", "false").lower() == "true"

    logger.info(
        "gitpulse service starting (interval=%ds, cron_sync=%s, store=%s, metrics_port=%d)",
        interval,
        cron_sync,
        config.store_backend,
        config.metrics_port,
    )

    async def loop():
        while not SHUTDOWN_REQUESTED:
            if await run_cycle(pipeline, cron_sync):
                write_health_file()

            # Sleep in small increments to allow graceful shutdown
            for _ in range(interval):
                if SHUTDOWN_REQUESTED:
                    break
                await asyncio.sleep(1)

    asyncio.run(loop())
    logger.info("gitpulse service shutting down gracefully")


if __name__ == "__main__":
    main()
