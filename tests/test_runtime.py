"""
Tests for engine startup / shutdown and the reconcile job wiring
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

import flywheel.database.engine as engine_module
import flywheel.runtime as runtime
from flywheel.services.cycle import get_cycle_scheduler
from flywheel.services.cycle.executor import DryRunTradeExecutor
from flywheel.tasks import reconcile_launches


async def test_disabled_engine_does_not_start(monkeypatch):
    monkeypatch.setattr(runtime, "FLYWHEEL_ENABLED", False)

    assert await runtime.start_flywheel() is None
    assert get_cycle_scheduler() is None


async def test_start_and_stop_flywheel(session_maker, monkeypatch):
    monkeypatch.setattr(engine_module, "AsyncSessionLocal", session_maker)
    monkeypatch.setattr(runtime, "FLYWHEEL_ENABLED", True)
    monkeypatch.setattr(runtime, "FLYWHEEL_DRY_RUN", True)
    monkeypatch.setattr(runtime, "RECONCILE_ENABLED", True)

    scheduler = await runtime.start_flywheel()
    try:
        assert scheduler is get_cycle_scheduler()
        assert isinstance(scheduler.executor, DryRunTradeExecutor)
        job_ids = {job["id"] for job in scheduler.get_status()["jobs"]}
        assert "reconcile_launches" in job_ids
        assert "flywheel_auto_claim" in job_ids

        # Second start reuses the running scheduler
        assert await runtime.start_flywheel() is scheduler
    finally:
        await runtime.stop_flywheel()

    assert get_cycle_scheduler() is None


def test_schedule_reconcile_tasks():
    scheduler = AsyncIOScheduler()

    reconcile_launches.schedule_reconcile_tasks(scheduler)

    job = scheduler.get_job("reconcile_launches")
    assert job is not None
    assert job.max_instances == 1


async def test_reconcile_job_swallows_errors(monkeypatch):
    async def broken():
        raise RuntimeError("database down")

    monkeypatch.setattr(reconcile_launches, "reconcile", broken)

    # Must not raise into the scheduler
    await reconcile_launches.run_reconcile_job()
