"""
Tests for the cycle state updater (in-memory state + persistence)
"""

from dataclasses import replace

import pytest

from flywheel.core.enums import CyclePhase
from flywheel.core.exceptions import PersistenceError
from flywheel.database import crud
from flywheel.services.cycle.state_updater import (
    BatchedWriteStrategy,
    IMMEDIATE,
    StateUpdater,
    strategy_for,
)


class MonotonicStub:
    def __init__(self):
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


async def stored_state(session_maker, token_id):
    async with session_maker() as session:
        return await crud.get_cycle_state(session, token_id)


def test_strategy_for_flag():
    assert strategy_for(False) is IMMEDIATE
    batched = strategy_for(True, 45)
    assert isinstance(batched, BatchedWriteStrategy)
    assert batched.flush_interval_seconds == 45


def test_batched_strategy_rules():
    batched = BatchedWriteStrategy(30)

    assert batched.should_persist(None, 0, False)
    assert not batched.should_persist(10.0, 20.0, False)
    assert batched.should_persist(10.0, 20.0, True)
    assert batched.should_persist(10.0, 40.0, False)


async def test_load_creates_missing_row(session_maker, make_token, db_session):
    token_id = await make_token()
    state = await crud.get_cycle_state(db_session, token_id)
    await db_session.delete(state)
    await db_session.commit()

    updater = StateUpdater(session_maker=session_maker)
    snapshot = await updater.load(token_id)

    assert snapshot.phase is CyclePhase.BUY
    assert (snapshot.buy_count, snapshot.sell_count) == (0, 0)
    assert await stored_state(session_maker, token_id) is not None


async def test_immediate_write(session_maker, make_token):
    token_id = await make_token()
    updater = StateUpdater(session_maker=session_maker)

    snapshot = await updater.load(token_id)
    await updater.apply(token_id, replace(snapshot, buy_count=1), IMMEDIATE)

    assert not updater.is_dirty(token_id)
    assert (await stored_state(session_maker, token_id)).buy_count == 1


async def test_batched_write_defers_until_interval(session_maker, make_token):
    token_id = await make_token()
    mono = MonotonicStub()
    updater = StateUpdater(session_maker=session_maker, flush_interval_seconds=30, clock=mono)
    strategy = updater.strategy_for(True)

    snapshot = await updater.load(token_id)
    mono.t = 5
    await updater.apply(token_id, replace(snapshot, buy_count=1), strategy)

    # In memory only
    assert updater.peek(token_id).buy_count == 1
    assert updater.is_dirty(token_id)
    assert (await stored_state(session_maker, token_id)).buy_count == 0

    mono.t = 31
    await updater.apply(token_id, replace(snapshot, buy_count=2), strategy)

    assert not updater.is_dirty(token_id)
    assert (await stored_state(session_maker, token_id)).buy_count == 2


async def test_batched_write_persists_phase_flip(session_maker, make_token):
    token_id = await make_token()
    mono = MonotonicStub()
    updater = StateUpdater(session_maker=session_maker, flush_interval_seconds=30, clock=mono)

    snapshot = await updater.load(token_id)
    flipped = replace(snapshot, phase=CyclePhase.SELL, buy_count=0, sell_count=0)
    await updater.apply(token_id, flipped, updater.strategy_for(True), phase_flipped=True)

    assert (await stored_state(session_maker, token_id)).cycle_phase == "sell"


async def test_flush_writes_dirty_entries(session_maker, make_token):
    first = await make_token()
    second = await make_token()
    mono = MonotonicStub()
    updater = StateUpdater(session_maker=session_maker, flush_interval_seconds=30, clock=mono)
    strategy = updater.strategy_for(True)

    for token_id in (first, second):
        snapshot = await updater.load(token_id)
        await updater.apply(token_id, replace(snapshot, buy_count=1), strategy)

    assert updater.pending_writes() == 2
    assert await updater.flush() == 2
    assert updater.pending_writes() == 0
    assert (await stored_state(session_maker, second)).buy_count == 1


async def test_failed_write_keeps_memory_and_retries(session_maker, make_token, monkeypatch):
    token_id = await make_token()
    updater = StateUpdater(session_maker=session_maker)
    snapshot = await updater.load(token_id)

    original = crud.save_cycle_state

    async def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(crud, "save_cycle_state", broken)
    await updater.apply(token_id, replace(snapshot, buy_count=1), IMMEDIATE)

    # In-memory state is authoritative while the row is stale
    assert updater.peek(token_id).buy_count == 1
    assert updater.is_dirty(token_id)
    assert (await stored_state(session_maker, token_id)).buy_count == 0

    monkeypatch.setattr(crud, "save_cycle_state", original)
    assert await updater.retry_failed(token_id) is True

    assert not updater.is_dirty(token_id)
    assert (await stored_state(session_maker, token_id)).buy_count == 1


async def test_stale_attempt_is_discarded(session_maker, make_token):
    token_id = await make_token()
    updater = StateUpdater(session_maker=session_maker)
    snapshot = await updater.load(token_id)

    stale = updater.begin_attempt(token_id)
    updater.abandon_attempt(token_id)

    applied = await updater.apply(token_id, replace(snapshot, buy_count=1), attempt_id=stale)

    assert applied is False
    assert updater.peek(token_id).buy_count == 0
    assert (await stored_state(session_maker, token_id)).buy_count == 0


async def test_outcome_after_invalidate_is_discarded(session_maker, make_token):
    token_id = await make_token()
    updater = StateUpdater(session_maker=session_maker)
    snapshot = await updater.load(token_id)
    attempt = updater.begin_attempt(token_id)

    updater.invalidate(token_id)

    assert not await updater.apply(token_id, replace(snapshot, buy_count=1), attempt_id=attempt)
    assert updater.peek(token_id) is None


async def test_drop_flushes_dirty_state(session_maker, make_token):
    token_id = await make_token()
    mono = MonotonicStub()
    updater = StateUpdater(session_maker=session_maker, flush_interval_seconds=30, clock=mono)
    snapshot = await updater.load(token_id)
    await updater.apply(token_id, replace(snapshot, sell_count=0, buy_count=3), updater.strategy_for(True))

    await updater.drop(token_id)

    assert updater.tracked_tokens() == 0
    assert (await stored_state(session_maker, token_id)).buy_count == 3


async def test_drop_keeps_state_when_final_write_fails(session_maker, make_token, monkeypatch):
    token_id = await make_token()
    updater = StateUpdater(session_maker=session_maker, clock=MonotonicStub())
    snapshot = await updater.load(token_id)
    await updater.apply(token_id, replace(snapshot, buy_count=2), updater.strategy_for(True))

    original = crud.save_cycle_state

    async def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(crud, "save_cycle_state", broken)
    with pytest.raises(PersistenceError):
        await updater.drop(token_id)

    assert updater.is_dirty(token_id)
    assert updater.peek(token_id).buy_count == 2

    monkeypatch.setattr(crud, "save_cycle_state", original)
    assert await updater.flush() == 1
    assert (await stored_state(session_maker, token_id)).buy_count == 2


@pytest.mark.parametrize("count", [1, 3])
async def test_load_is_served_from_memory(session_maker, make_token, count):
    token_id = await make_token()
    updater = StateUpdater(session_maker=session_maker)

    snapshot = await updater.load(token_id)
    await updater.apply(token_id, replace(snapshot, buy_count=count))

    assert (await updater.load(token_id)).buy_count == count
