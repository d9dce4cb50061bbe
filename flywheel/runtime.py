"""
Flywheel engine startup / shutdown

Shared by flywheel_worker.py and api_server.py: builds the trade executor,
starts the CycleScheduler and attaches the reconcile job to it.
"""

from typing import Optional

from loguru import logger

from config.config import FLYWHEEL_DRY_RUN, FLYWHEEL_ENABLED, RECONCILE_ENABLED
from flywheel.services.cycle import get_cycle_scheduler, set_cycle_scheduler
from flywheel.services.cycle.executor import FeeClaimService, create_executor
from flywheel.services.cycle.scheduler import CycleScheduler
from flywheel.tasks.reconcile_launches import schedule_reconcile_tasks


async def start_flywheel() -> Optional[CycleScheduler]:
    """
    Start the cycle scheduler for this process

    Returns:
        Running CycleScheduler, or None if FLYWHEEL_ENABLED is false
    """
    if not FLYWHEEL_ENABLED:
        logger.warning("FLYWHEEL_ENABLED=false - cycle scheduler not started")
        return None

    existing = get_cycle_scheduler()
    if existing is not None and existing.is_running:
        return existing

    executor = create_executor(FLYWHEEL_DRY_RUN)
    fee_claim_service = executor if isinstance(executor, FeeClaimService) else None

    scheduler = CycleScheduler(executor=executor, fee_claim_service=fee_claim_service)
    if RECONCILE_ENABLED:
        scheduler.add_jobs(schedule_reconcile_tasks)
    scheduler.start()

    set_cycle_scheduler(scheduler)
    return scheduler


async def stop_flywheel() -> None:
    """Stop the scheduler, flush state, close the executor."""
    scheduler = get_cycle_scheduler()
    if scheduler is None:
        return

    await scheduler.stop()
    await scheduler.executor.close()
    set_cycle_scheduler(None)
    logger.info("Flywheel engine stopped")
