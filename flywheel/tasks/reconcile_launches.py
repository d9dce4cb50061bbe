"""
Launch Reconcile Job - links completed launches to user tokens

Runs inside the worker every RECONCILE_INTERVAL_MINUTES, or standalone:
    python -m flywheel.tasks.reconcile_launches

Or add to crontab:
    */10 * * * * cd /path/to/project && /path/to/.venv/bin/python -m flywheel.tasks.reconcile_launches
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from loguru import logger

from config.config import RECONCILE_INTERVAL_MINUTES
from config.logging import setup_logging
from flywheel.database.engine import dispose_engine
from flywheel.services.launches.reconciler import reconcile


async def run_reconcile_job():
    """Scheduled reconcile pass; errors are logged, never raised into the scheduler."""
    try:
        await reconcile()
    except Exception as e:
        logger.exception(f"Error in launch reconcile job: {e}")


def schedule_reconcile_tasks(scheduler):
    """
    Schedule the launch reconcile job

    Args:
        scheduler: APScheduler instance
    """
    scheduler.add_job(
        run_reconcile_job,
        trigger="interval",
        minutes=RECONCILE_INTERVAL_MINUTES,
        id="reconcile_launches",
        name="Reconcile completed launches",
        replace_existing=True,
        max_instances=1,  # Prevent overlapping runs
    )

    logger.info(f"Launch reconcile scheduled: every {RECONCILE_INTERVAL_MINUTES} minutes")


async def main():
    """
    One-off reconcile run
    """
    logger.info("=" * 80)
    logger.info("Launch Reconcile - Starting")
    logger.info("=" * 80)

    try:
        stats = await reconcile()

        logger.info("=" * 80)
        logger.info("Launch Reconcile - Results:")
        logger.info(f"  - Launches checked: {stats.checked}")
        logger.info(f"  - New user tokens: {stats.created}")
        logger.info(f"  - Linked to existing tokens: {stats.linked}")
        logger.info(f"  - Partially created: {stats.partial}")
        logger.info(f"  - Repaired: {stats.repaired}")
        logger.info(f"  - Failed: {stats.failed}")
        logger.info("=" * 80)
        return stats
    finally:
        await dispose_engine()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
