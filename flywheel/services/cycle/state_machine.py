"""
Cycle State Machine

Pure transition logic for one token's buy/sell cycle. No I/O here: the
scheduler asks decide() what a tick should do, runs the trade if needed
and hands the outcome back to one of the apply_* functions, which return
a new immutable CycleSnapshot for the state updater.

Transitions (target = cycle size of the current phase):

    paused_until > now                 -> PAUSED  (no-op)
    now - last check < interval        -> WAIT    (no-op)
    phase count >= target              -> FLIP    (phase flips, counters 0/0, result=balanced)
    otherwise                          -> TRADE   (executor call, counter +1 on fill)
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from config.config import MAX_CONSECUTIVE_FAILURES, PAUSE_DURATION_MINUTES
from flywheel.core.enums import AlgorithmMode, CheckResult, CyclePhase, TradeReason
from flywheel.utils.timeutils import ensure_utc


class TickAction(str, Enum):
    PAUSED = "paused"
    WAIT = "wait"
    FLIP = "flip"
    TRADE = "trade"


@dataclass(frozen=True)
class CycleSettings:
    """Immutable view of a TokenConfig, read once per tick."""

    token_id: int
    algorithm_mode: AlgorithmMode
    cycle_size_buys: int
    cycle_size_sells: int
    job_interval_seconds: int
    confirmation_timeout_seconds: int
    rate_limit_per_minute: int
    batch_state_updates: bool
    slippage_bps: int = 300
    buy_percent: float = 20.0
    sell_percent: float = 20.0

    @classmethod
    def from_model(cls, config) -> "CycleSettings":
        return cls(
            token_id=config.user_token_id,
            algorithm_mode=AlgorithmMode(config.algorithm_mode),
            cycle_size_buys=config.cycle_size_buys,
            cycle_size_sells=config.cycle_size_sells,
            job_interval_seconds=config.job_interval_seconds,
            confirmation_timeout_seconds=config.confirmation_timeout_seconds,
            rate_limit_per_minute=config.rate_limit_per_minute,
            batch_state_updates=config.batch_state_updates,
            slippage_bps=config.slippage_bps,
            buy_percent=config.buy_percent,
            sell_percent=config.sell_percent,
        )

    def target_for(self, phase: CyclePhase) -> int:
        return self.cycle_size_buys if phase is CyclePhase.BUY else self.cycle_size_sells

    def percent_for(self, phase: CyclePhase) -> float:
        return self.buy_percent if phase is CyclePhase.BUY else self.sell_percent


@dataclass(frozen=True)
class CycleSnapshot:
    """In-memory copy of a CycleState row."""

    token_id: int
    phase: CyclePhase = CyclePhase.BUY
    buy_count: int = 0
    sell_count: int = 0
    last_trade_at: Optional[datetime] = None
    last_check_at: Optional[datetime] = None
    last_check_result: Optional[CheckResult] = None
    consecutive_failures: int = 0
    total_failures: int = 0
    last_failure_reason: Optional[str] = None
    last_failure_at: Optional[datetime] = None
    paused_until: Optional[datetime] = None

    @classmethod
    def from_model(cls, state) -> "CycleSnapshot":
        return cls(
            token_id=state.user_token_id,
            phase=CyclePhase(state.cycle_phase),
            buy_count=state.buy_count or 0,
            sell_count=state.sell_count or 0,
            last_trade_at=ensure_utc(state.last_trade_at),
            last_check_at=ensure_utc(state.last_check_at),
            last_check_result=CheckResult(state.last_check_result) if state.last_check_result else None,
            consecutive_failures=state.consecutive_failures or 0,
            total_failures=state.total_failures or 0,
            last_failure_reason=state.last_failure_reason,
            last_failure_at=ensure_utc(state.last_failure_at),
            paused_until=ensure_utc(state.paused_until),
        )

    def to_values(self) -> Dict[str, Any]:
        """CycleState column values."""
        return {
            "cycle_phase": self.phase.value,
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "last_trade_at": self.last_trade_at,
            "last_check_at": self.last_check_at,
            "last_check_result": self.last_check_result.value if self.last_check_result else None,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_failure_reason": self.last_failure_reason,
            "last_failure_at": self.last_failure_at,
            "paused_until": self.paused_until,
        }

    def count_for(self, phase: CyclePhase) -> int:
        return self.buy_count if phase is CyclePhase.BUY else self.sell_count

    def is_paused(self, now: datetime) -> bool:
        return self.paused_until is not None and self.paused_until > now


@dataclass(frozen=True)
class FailurePolicy:
    """Consecutive failures before a token is paused, and for how long."""

    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    pause_duration: timedelta = timedelta(minutes=PAUSE_DURATION_MINUTES)


DEFAULT_FAILURE_POLICY = FailurePolicy()


def is_due(snapshot: CycleSnapshot, settings: CycleSettings, now: datetime) -> bool:
    """
    True when at least job_interval_seconds passed since the last evaluated tick

    Every evaluated tick (fill, failure, rate_limited, flip) sets last_check_at,
    so a token is attempted at most once per interval whatever the outcome.
    """
    last = snapshot.last_check_at or snapshot.last_trade_at
    if last is None:
        return True
    elapsed = (now - last).total_seconds()
    return elapsed >= settings.job_interval_seconds


def decide(snapshot: CycleSnapshot, settings: CycleSettings, now: datetime) -> TickAction:
    """What a tick at `now` should do for this token."""
    if snapshot.is_paused(now):
        return TickAction.PAUSED
    if not is_due(snapshot, settings, now):
        return TickAction.WAIT
    # >= so a cycle size lowered mid-phase still flips
    if snapshot.count_for(snapshot.phase) >= settings.target_for(snapshot.phase):
        return TickAction.FLIP
    return TickAction.TRADE


def apply_flip(snapshot: CycleSnapshot, now: datetime) -> CycleSnapshot:
    """Phase target reached: switch phase and reset both counters."""
    return replace(
        snapshot,
        phase=snapshot.phase.opposite(),
        buy_count=0,
        sell_count=0,
        last_check_at=now,
        last_check_result=CheckResult.BALANCED,
    )


def apply_rate_limited(snapshot: CycleSnapshot, now: datetime) -> CycleSnapshot:
    """No capacity this tick; counters and last_trade_at untouched."""
    return replace(snapshot, last_check_at=now, last_check_result=CheckResult.RATE_LIMITED)


def clear_expired_pause(snapshot: CycleSnapshot, now: datetime) -> CycleSnapshot:
    if snapshot.paused_until is not None and snapshot.paused_until <= now:
        return replace(snapshot, paused_until=None, consecutive_failures=0)
    return snapshot


def apply_trade_outcome(
    snapshot: CycleSnapshot,
    success: bool,
    reason: TradeReason,
    now: datetime,
    error: Optional[str] = None,
    policy: FailurePolicy = DEFAULT_FAILURE_POLICY,
) -> CycleSnapshot:
    """
    Fold a trade executor outcome into the snapshot

    Args:
        snapshot: Snapshot the trade was started from
        success: Executor reported a fill
        reason: Executor reason (timeouts are mapped to TradeReason.TIMEOUT)
        now: Tick start time; becomes last_trade_at on a fill
        error: Optional error text for the failure fields
        policy: Auto-pause thresholds

    Returns:
        New CycleSnapshot
    """
    if success:
        if snapshot.phase is CyclePhase.BUY:
            counters = {"buy_count": snapshot.buy_count + 1}
        else:
            counters = {"sell_count": snapshot.sell_count + 1}

        return replace(
            snapshot,
            last_trade_at=now,
            last_check_at=now,
            last_check_result=CheckResult.TRADED,
            consecutive_failures=0,
            last_failure_reason=None,
            **counters,
        )

    if reason is TradeReason.INSUFFICIENT_FUNDS:
        # Informational; retried on the next due tick without counting as a failure
        return replace(
            snapshot,
            last_check_at=now,
            last_check_result=CheckResult.INSUFFICIENT_FUNDS,
        )

    consecutive = snapshot.consecutive_failures + 1
    paused_until = snapshot.paused_until
    if consecutive >= policy.max_consecutive_failures:
        paused_until = now + policy.pause_duration

    return replace(
        snapshot,
        last_check_at=now,
        last_check_result=CheckResult.ERROR,
        consecutive_failures=consecutive,
        total_failures=snapshot.total_failures + 1,
        last_failure_reason=error or reason.value,
        last_failure_at=now,
        paused_until=paused_until,
    )


def just_paused(before: CycleSnapshot, after: CycleSnapshot) -> bool:
    return after.paused_until is not None and after.paused_until != before.paused_until
