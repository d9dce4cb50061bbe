"""
Flywheel Cycle Engine

Buy/sell cycle scheduling for every active token:
- state_machine: pure tick transitions
- state_updater: in-memory state, immediate / batched persistence
- rate_limiter: global trade ceiling shared by all tokens
- executor: trade executor / fee claim adapters
- scheduler: APScheduler host (CycleScheduler)

NOTE: The scheduler is imported from its own module to avoid circular imports:
    from flywheel.services.cycle.scheduler import CycleScheduler
"""

from flywheel.services.cycle.state_machine import (
    CycleSettings,
    CycleSnapshot,
    FailurePolicy,
    TickAction,
    decide,
)
from flywheel.services.cycle.rate_limiter import GlobalRateLimiter


_cycle_scheduler = None


def get_cycle_scheduler():
    """Scheduler owned by the running process (None if not started here)."""
    return _cycle_scheduler


def set_cycle_scheduler(scheduler) -> None:
    global _cycle_scheduler
    _cycle_scheduler = scheduler


__all__ = [
    "CycleSettings",
    "CycleSnapshot",
    "FailurePolicy",
    "TickAction",
    "decide",
    "GlobalRateLimiter",
    "get_cycle_scheduler",
    "set_cycle_scheduler",
]
