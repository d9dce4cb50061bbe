"""
Unit tests for the cycle state machine (no database)
"""

from datetime import datetime, timedelta, UTC

import pytest

from flywheel.core.enums import AlgorithmMode, CheckResult, CyclePhase, TradeReason
from flywheel.services.cycle.state_machine import (
    CycleSettings,
    CycleSnapshot,
    FailurePolicy,
    TickAction,
    apply_flip,
    apply_rate_limited,
    apply_trade_outcome,
    clear_expired_pause,
    decide,
    is_due,
    just_paused,
)


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def settings(**overrides) -> CycleSettings:
    values = dict(
        token_id=1,
        algorithm_mode=AlgorithmMode.SIMPLE,
        cycle_size_buys=2,
        cycle_size_sells=2,
        job_interval_seconds=60,
        confirmation_timeout_seconds=30,
        rate_limit_per_minute=30,
        batch_state_updates=False,
    )
    values.update(overrides)
    return CycleSettings(**values)


def run_tick(snapshot: CycleSnapshot, cfg: CycleSettings, now: datetime) -> CycleSnapshot:
    """One tick with a filling executor."""
    action = decide(snapshot, cfg, now)
    if action is TickAction.FLIP:
        return apply_flip(snapshot, now)
    if action is TickAction.TRADE:
        return apply_trade_outcome(snapshot, True, TradeReason.FILLED, now)
    return snapshot


def test_two_by_two_cycle_sequence():
    """(buy,1) -> (buy,2) -> (sell,0) -> (sell,1) -> (sell,2) -> (buy,0)"""
    cfg = settings()
    snapshot = CycleSnapshot(token_id=1)
    now = T0

    observed = []
    for _ in range(6):
        snapshot = run_tick(snapshot, cfg, now)
        observed.append((snapshot.phase, snapshot.count_for(snapshot.phase)))
        now += timedelta(seconds=cfg.job_interval_seconds)

    assert observed == [
        (CyclePhase.BUY, 1),
        (CyclePhase.BUY, 2),
        (CyclePhase.SELL, 0),
        (CyclePhase.SELL, 1),
        (CyclePhase.SELL, 2),
        (CyclePhase.BUY, 0),
    ]


def test_counters_never_exceed_cycle_sizes():
    cfg = settings(cycle_size_buys=3, cycle_size_sells=1)
    snapshot = CycleSnapshot(token_id=1)
    now = T0

    for _ in range(40):
        snapshot = run_tick(snapshot, cfg, now)
        assert snapshot.buy_count <= cfg.cycle_size_buys
        assert snapshot.sell_count <= cfg.cycle_size_sells
        now += timedelta(seconds=60)


def test_flip_resets_both_counters_and_records_balanced():
    snapshot = CycleSnapshot(token_id=1, phase=CyclePhase.BUY, buy_count=2, sell_count=0)

    assert decide(snapshot, settings(), T0) is TickAction.FLIP

    flipped = apply_flip(snapshot, T0)
    assert flipped.phase is CyclePhase.SELL
    assert (flipped.buy_count, flipped.sell_count) == (0, 0)
    assert flipped.last_check_result is CheckResult.BALANCED
    assert flipped.last_check_at == T0
    # Flipping is not a trade
    assert flipped.last_trade_at is None


def test_lowered_cycle_size_flips_on_next_tick():
    snapshot = CycleSnapshot(token_id=1, phase=CyclePhase.SELL, sell_count=4)
    assert decide(snapshot, settings(cycle_size_sells=2), T0) is TickAction.FLIP


def test_not_due_before_interval():
    cfg = settings(job_interval_seconds=60)
    snapshot = CycleSnapshot(token_id=1, buy_count=1, last_trade_at=T0)

    assert not is_due(snapshot, cfg, T0 + timedelta(seconds=59))
    assert decide(snapshot, cfg, T0 + timedelta(seconds=59)) is TickAction.WAIT
    assert decide(snapshot, cfg, T0 + timedelta(seconds=60)) is TickAction.TRADE


@pytest.mark.parametrize(
    "result",
    [CheckResult.ERROR, CheckResult.RATE_LIMITED, CheckResult.INSUFFICIENT_FUNDS, CheckResult.BALANCED],
)
def test_any_checked_tick_waits_a_full_interval(result):
    cfg = settings(job_interval_seconds=60)
    snapshot = CycleSnapshot(
        token_id=1,
        last_trade_at=T0 - timedelta(minutes=10),
        last_check_at=T0,
        last_check_result=result,
    )

    assert decide(snapshot, cfg, T0 + timedelta(seconds=30)) is TickAction.WAIT
    assert decide(snapshot, cfg, T0 + timedelta(seconds=60)) is TickAction.TRADE


def test_first_tick_is_always_due():
    assert is_due(CycleSnapshot(token_id=1), settings(), T0)


def test_fill_advances_only_current_phase():
    snapshot = CycleSnapshot(token_id=1, phase=CyclePhase.SELL, buy_count=0, sell_count=1)

    updated = apply_trade_outcome(snapshot, True, TradeReason.FILLED, T0)

    assert updated.sell_count == 2
    assert updated.buy_count == 0
    assert updated.last_trade_at == T0
    assert updated.last_check_result is CheckResult.TRADED


def test_insufficient_funds_is_informational():
    snapshot = CycleSnapshot(token_id=1, buy_count=1, consecutive_failures=2)

    updated = apply_trade_outcome(snapshot, False, TradeReason.INSUFFICIENT_FUNDS, T0)

    assert updated.last_check_result is CheckResult.INSUFFICIENT_FUNDS
    assert updated.buy_count == 1
    assert updated.consecutive_failures == 2
    assert updated.total_failures == 0
    assert updated.last_trade_at is None


def test_timeout_records_error_and_keeps_counters():
    snapshot = CycleSnapshot(token_id=1, buy_count=1)

    updated = apply_trade_outcome(snapshot, False, TradeReason.TIMEOUT, T0, error="no confirmation")

    assert updated.last_check_result is CheckResult.ERROR
    assert updated.buy_count == 1
    assert updated.phase is CyclePhase.BUY
    assert updated.consecutive_failures == 1
    assert updated.total_failures == 1
    assert updated.last_failure_reason == "no confirmation"
    assert updated.last_failure_at == T0
    assert updated.paused_until is None


def test_pause_after_consecutive_failures():
    policy = FailurePolicy(max_consecutive_failures=3, pause_duration=timedelta(minutes=30))
    snapshot = CycleSnapshot(token_id=1)

    for _ in range(3):
        before = snapshot
        snapshot = apply_trade_outcome(snapshot, False, TradeReason.CHAIN_ERROR, T0, policy=policy)

    assert snapshot.consecutive_failures == 3
    assert snapshot.paused_until == T0 + timedelta(minutes=30)
    assert just_paused(before, snapshot)
    assert decide(snapshot, settings(), T0 + timedelta(minutes=10)) is TickAction.PAUSED


def test_success_resets_consecutive_failures():
    snapshot = CycleSnapshot(token_id=1, consecutive_failures=4, total_failures=7, last_failure_reason="x")

    updated = apply_trade_outcome(snapshot, True, TradeReason.FILLED, T0)

    assert updated.consecutive_failures == 0
    assert updated.total_failures == 7
    assert updated.last_failure_reason is None


def test_expired_pause_is_cleared():
    paused = CycleSnapshot(token_id=1, consecutive_failures=5, paused_until=T0)

    assert clear_expired_pause(paused, T0 - timedelta(seconds=1)) is paused

    resumed = clear_expired_pause(paused, T0)
    assert resumed.paused_until is None
    assert resumed.consecutive_failures == 0


def test_rate_limited_leaves_trade_state_alone():
    snapshot = CycleSnapshot(token_id=1, buy_count=1, last_trade_at=T0 - timedelta(minutes=5))

    updated = apply_rate_limited(snapshot, T0)

    assert updated.last_check_result is CheckResult.RATE_LIMITED
    assert updated.buy_count == 1
    assert updated.last_trade_at == snapshot.last_trade_at
    assert updated.consecutive_failures == 0


@pytest.mark.parametrize("phase,expected", [(CyclePhase.BUY, 20.0), (CyclePhase.SELL, 35.0)])
def test_percent_for_phase(phase, expected):
    cfg = settings(buy_percent=20.0, sell_percent=35.0)
    assert cfg.percent_for(phase) == expected


def test_snapshot_values_round_trip_enums():
    snapshot = CycleSnapshot(
        token_id=1,
        phase=CyclePhase.SELL,
        sell_count=1,
        last_check_result=CheckResult.TRADED,
    )

    values = snapshot.to_values()

    assert values["cycle_phase"] == "sell"
    assert values["last_check_result"] == "traded"
    assert "token_id" not in values


def test_only_errors_count_as_failures():
    assert CheckResult.ERROR.is_failure()
    for result in (CheckResult.TRADED, CheckResult.INSUFFICIENT_FUNDS, CheckResult.RATE_LIMITED, CheckResult.BALANCED):
        assert not result.is_failure()
