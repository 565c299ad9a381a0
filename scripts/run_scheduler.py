#!/usr/bin/env python3
"""
Run the appointment notification scheduler as a standalone process.

Usage:
    python scripts/run_scheduler.py            # tick forever on SCHEDULER_TICK_SECONDS
    python scripts/run_scheduler.py --once     # run a single tick and exit

Use this when the API replicas run with SCHEDULER_ENABLED=false. Several
copies may run at once; claims on the appointments table keep each due
notification to a single delivery.
"""

import argparse
import asyncio
import signal
import sys

import structlog

from app.config import settings
from app.database import AsyncSessionLocal, engine
from app.middleware.logging import configure_logging
from app.services.notification_gateway import build_gateway
from app.services.notification_scheduler import NotificationScheduler

logger = structlog.get_logger("scheduler")


async def run(once: bool) -> int:
    """Run one tick or keep ticking until interrupted."""
    gateway = build_gateway(settings)
    scheduler = NotificationScheduler(AsyncSessionLocal, gateway)

    try:
        if once:
            report = await scheduler.tick()
            return 1 if report.aborted else 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        scheduler.start()
        await stop.wait()
        scheduler.shutdown()
        return 0
    finally:
        await gateway.aclose()
        await engine.dispose()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Appointment notification scheduler")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit (non-zero exit code if the tick aborted)",
    )
    args = parser.parse_args()

    configure_logging()
    logger.info("scheduler_process_started", once=args.once, environment=settings.environment)
    return asyncio.run(run(args.once))


if __name__ == "__main__":
    sys.exit(main())
