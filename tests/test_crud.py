"""
Unit tests for CRUD operations
"""

import pytest
from sqlalchemy.exc import IntegrityError

from flywheel.core.enums import AlgorithmMode, AuditEventType, CyclePhase, LaunchStatus
from flywheel.database.crud import (
    create_cycle_state,
    create_pending_launch,
    create_user_token_from_launch,
    get_active_flywheel_tokens,
    get_audit_events,
    get_cycle_state,
    get_or_create_cycle_state,
    get_recent_trades,
    get_unlinked_completed_launch_ids,
    get_user_token,
    get_user_token_by_mint,
    link_launch_to_token,
    log_audit_event,
    record_trade,
    register_user_token,
    save_cycle_state,
    set_token_owner_if_unset,
    update_token_config,
)


async def _register(session, mint="MintA", mode=AlgorithmMode.SIMPLE, owner_id=None):
    return await register_user_token(
        session,
        mint_address=mint,
        dev_wallet_address="dev",
        dev_wallet_key_encrypted="enc",
        dev_encryption_iv="iv",
        ops_wallet_address="ops",
        ops_wallet_key_encrypted="enc",
        ops_encryption_iv="iv",
        owner_id=owner_id,
        algorithm_mode=mode,
    )


async def _launch(session, mint="MintL", status=LaunchStatus.COMPLETED, owner_id="u1"):
    return await create_pending_launch(
        session,
        token_name="Launch",
        token_symbol="LNC",
        dev_wallet_address="dev",
        dev_wallet_key_encrypted="enc",
        dev_encryption_iv="iv",
        ops_wallet_address="ops",
        ops_wallet_key_encrypted="enc",
        ops_encryption_iv="iv",
        owner_id=owner_id,
        status=status,
        token_mint_address=mint,
    )


@pytest.mark.asyncio
async def test_register_user_token(db_session):
    """Test token registration creates config and cycle state"""
    token = await _register(db_session, mode=AlgorithmMode.TURBO)

    assert token.config.algorithm_mode == "turbo"
    assert token.config.cycle_size_buys == 8
    assert token.config.batch_state_updates is True
    assert token.cycle_state.cycle_phase == CyclePhase.BUY.value
    assert token.cycle_state.buy_count == 0

    loaded = await get_user_token(db_session, token.id)
    assert loaded.config is not None
    assert loaded.cycle_state is not None


@pytest.mark.asyncio
async def test_mint_is_unique(db_session):
    """Test duplicate mint address is rejected"""
    await _register(db_session, mint="SameMint")

    with pytest.raises(IntegrityError):
        await _register(db_session, mint="SameMint")


@pytest.mark.asyncio
async def test_get_user_token_by_mint(db_session):
    token = await _register(db_session, mint="Findable")

    assert (await get_user_token_by_mint(db_session, "Findable")).id == token.id
    assert await get_user_token_by_mint(db_session, "Missing") is None


@pytest.mark.asyncio
async def test_active_flywheel_tokens(db_session):
    """Only active tokens with flywheel_active are scheduled"""
    active = await _register(db_session, mint="A1")
    paused = await _register(db_session, mint="A2")
    await update_token_config(db_session, paused.id, {"flywheel_active": False})

    tokens = await get_active_flywheel_tokens(db_session)

    assert [t.id for t in tokens] == [active.id]
    assert tokens[0].config is not None


@pytest.mark.asyncio
async def test_cycle_state_get_or_create(db_session):
    launch = await _launch(db_session)
    token = await create_user_token_from_launch(db_session, launch)

    state, created = await get_or_create_cycle_state(db_session, token.id)
    assert created is True
    assert state.cycle_phase == "buy"

    again, created_again = await get_or_create_cycle_state(db_session, token.id)
    assert created_again is False
    assert again.id == state.id


@pytest.mark.asyncio
async def test_save_cycle_state_upserts(db_session):
    launch = await _launch(db_session)
    token = await create_user_token_from_launch(db_session, launch)

    # No row yet: inserted
    await save_cycle_state(db_session, token.id, {"cycle_phase": "sell", "buy_count": 0, "sell_count": 1})
    state = await get_cycle_state(db_session, token.id)
    assert (state.cycle_phase, state.sell_count) == ("sell", 1)

    # Existing row: updated
    await save_cycle_state(db_session, token.id, {"sell_count": 2})
    await db_session.refresh(state)
    assert state.sell_count == 2


@pytest.mark.asyncio
async def test_create_cycle_state_twice_fails(db_session):
    launch = await _launch(db_session)
    token = await create_user_token_from_launch(db_session, launch)
    await create_cycle_state(db_session, token.id)

    with pytest.raises(IntegrityError):
        await create_cycle_state(db_session, token.id)


@pytest.mark.asyncio
async def test_launch_token_copy(db_session):
    """Token created from a launch copies wallets and owner"""
    launch = await _launch(db_session, owner_id="owner-x")

    token = await create_user_token_from_launch(db_session, launch)

    assert token.token_mint_address == "MintL"
    assert token.owner_id == "owner-x"
    assert token.ops_wallet_address == "ops"
    assert token.dev_encryption_auth_tag == ""
    assert token.launched_via_reconciler is True


@pytest.mark.asyncio
async def test_unlinked_launches_and_link(db_session):
    first = await _launch(db_session, mint="L1")
    await _launch(db_session, mint="L2", status=LaunchStatus.PROCESSING)
    await _launch(db_session, mint=None)
    token = await _register(db_session, mint="L1")

    assert await get_unlinked_completed_launch_ids(db_session) == [first.id]

    assert await link_launch_to_token(db_session, first.id, token.id) is True
    # Already linked: no overwrite
    assert await link_launch_to_token(db_session, first.id, token.id + 1) is False
    assert await get_unlinked_completed_launch_ids(db_session) == []


@pytest.mark.asyncio
async def test_set_owner_only_when_unset(db_session):
    token = await _register(db_session, owner_id=None)

    assert await set_token_owner_if_unset(db_session, token, "first") is True
    assert await set_token_owner_if_unset(db_session, token, "second") is False
    assert await set_token_owner_if_unset(db_session, token, None) is False

    await db_session.refresh(token)
    assert token.owner_id == "first"


@pytest.mark.asyncio
async def test_audit_events_and_trades(db_session):
    token = await _register(db_session)

    await log_audit_event(db_session, AuditEventType.CONFIG_UPDATED, user_token_id=token.id, details={"a": 1})
    await log_audit_event(db_session, AuditEventType.FLYWHEEL_PAUSED, user_token_id=token.id)
    await record_trade(db_session, token.id, CyclePhase.BUY, True, "filled", amount=0.5, latency_ms=900)
    await record_trade(db_session, token.id, CyclePhase.BUY, False, "timeout", error="slow")

    events = await get_audit_events(db_session)
    assert [e.event_type for e in events] == ["flywheel_paused", "config_updated"]
    assert len(await get_audit_events(db_session, AuditEventType.CONFIG_UPDATED)) == 1

    trades = await get_recent_trades(db_session, token.id, limit=1)
    assert len(trades) == 1
    assert trades[0].reason == "timeout"


@pytest.mark.asyncio
async def test_unknown_algorithm_mode_is_rejected(db_session):
    """Stored modes are limited to the known algorithm modes"""
    token = await _register(db_session)

    with pytest.raises(IntegrityError):
        await update_token_config(db_session, token.id, {"algorithm_mode": "smart"})
