#!/usr/bin/env python3
"""
Stock Notification Scheduler - runs the stock e-mail jobs without the HTTP server
Usage: python scheduler.py

Features:
- Log rotation (keep 7 files, max 50MB per file)
- Schedules hot-reload from the system_setting "schedule" row
"""
import asyncio
import logging
import signal

from canteen.core.logging import setup_logging
from canteen.context import build_context

logger = logging.getLogger(__name__)


async def run():
    ctx = build_context()
    await ctx.startup()

    logger.info("Stock notification scheduler started")
    for job in ctx.supervisor.jobs():
        logger.info(f"   {job['name']}: '{job['cron']}' ({job['tz']}) next={job['next_run_time']}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    try:
        await stop_event.wait()
    finally:
        await ctx.shutdown()
        logger.info("Stock notification scheduler stopped")


def main():
    setup_logging("scheduler.log")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
