"""
Flywheel Engine - headless worker entry point

Runs the cycle scheduler, state flush, auto-claim and launch reconcile
jobs without the HTTP API. Use this (with SCHEDULER_IN_API=false on the
API server) to run the engine in its own process.
"""

import asyncio
import signal
import sys

from loguru import logger

from config.config import validate_config
from config.logging import setup_logging
from config.sentry import init_sentry
from flywheel.database.engine import check_connection, dispose_engine
from flywheel.runtime import start_flywheel, stop_flywheel


async def on_startup() -> None:
    """Actions to perform on worker startup"""
    logger.info("Starting Flywheel worker...")

    # NOTE: Database tables managed by Alembic migrations
    # Run: alembic upgrade head
    if not await check_connection():
        raise RuntimeError("Database unreachable")

    scheduler = await start_flywheel()
    if scheduler is None:
        logger.warning("Worker started with the cycle scheduler disabled")


async def on_shutdown() -> None:
    """Actions to perform on worker shutdown"""
    logger.info("Shutting down Flywheel worker...")

    await stop_flywheel()

    # Close database connections
    await dispose_engine()
    logger.info("Database connections closed")


async def main() -> None:
    """Main worker function"""

    # Setup logging
    setup_logging()

    # Initialize Sentry error monitoring
    init_sentry()

    # Validate configuration
    if not validate_config():
        logger.error("Configuration validation failed. Please check your .env file.")
        sys.exit(1)

    logger.info("Configuration validated successfully")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await on_startup()
        await stop_event.wait()
    except Exception as e:
        logger.exception(f"Critical error during worker operation: {e}")
        raise
    finally:
        await on_shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Worker stopped")
