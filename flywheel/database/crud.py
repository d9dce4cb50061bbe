"""
CRUD operations for the Flywheel Engine

Async database operations using SQLAlchemy 2.0. These functions are the
Config Store / Cycle State Store / Launch Store used by the scheduler,
the state updater and the launch reconciler.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select, update, desc, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.flywheel_config import get_mode_preset
from flywheel.core.enums import (
    AlgorithmMode,
    AuditEventType,
    CyclePhase,
    LaunchStatus,
)
from flywheel.database.models import (
    AuditEvent,
    CycleState,
    FlywheelTrade,
    PendingLaunch,
    TokenConfig,
    UserToken,
)


# ===========================
# USER TOKEN OPERATIONS
# ===========================


async def get_user_token(
    session: AsyncSession, token_id: int
) -> Optional[UserToken]:
    """
    Get user token with config and cycle state loaded

    Args:
        session: Database session
        token_id: UserToken ID

    Returns:
        UserToken model or None
    """
    stmt = (
        select(UserToken)
        .where(UserToken.id == token_id)
        .options(selectinload(UserToken.config), selectinload(UserToken.cycle_state))
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_token_by_mint(
    session: AsyncSession, mint_address: str
) -> Optional[UserToken]:
    """
    Get user token by mint address (unique)

    Args:
        session: Database session
        mint_address: Token mint address

    Returns:
        UserToken model or None
    """
    stmt = select(UserToken).where(UserToken.token_mint_address == mint_address)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_flywheel_tokens(session: AsyncSession) -> List[UserToken]:
    """
    Get all tokens the scheduler should drive

    A token is scheduled when the UserToken is active and its config has
    flywheel_active set.

    Returns:
        List of UserToken models with config loaded
    """
    stmt = (
        select(UserToken)
        .join(TokenConfig, TokenConfig.user_token_id == UserToken.id)
        .where(UserToken.is_active.is_(True))
        .where(TokenConfig.flywheel_active.is_(True))
        .options(selectinload(UserToken.config))
        .order_by(UserToken.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_tokens_for_auto_claim(session: AsyncSession) -> List[UserToken]:
    """Active tokens with auto-claim enabled, config loaded."""
    stmt = (
        select(UserToken)
        .join(TokenConfig, TokenConfig.user_token_id == UserToken.id)
        .where(UserToken.is_active.is_(True))
        .where(TokenConfig.auto_claim_enabled.is_(True))
        .options(selectinload(UserToken.config))
        .order_by(UserToken.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_user_token_from_launch(
    session: AsyncSession, launch: PendingLaunch
) -> UserToken:
    """
    Create user token copying wallets and key material from a launch

    Commits immediately. A duplicate mint raises IntegrityError; the
    caller decides how to treat it.

    Args:
        session: Database session
        launch: Completed PendingLaunch with mint address set

    Returns:
        Created UserToken model
    """
    token = UserToken(
        token_mint_address=launch.token_mint_address,
        token_symbol=launch.token_symbol,
        token_name=launch.token_name,
        token_image_url=launch.token_image_url,
        owner_id=launch.owner_id,
        dev_wallet_address=launch.dev_wallet_address,
        dev_wallet_key_encrypted=launch.dev_wallet_key_encrypted,
        dev_encryption_iv=launch.dev_encryption_iv,
        dev_encryption_auth_tag=launch.dev_encryption_auth_tag or "",
        ops_wallet_address=launch.ops_wallet_address,
        ops_wallet_key_encrypted=launch.ops_wallet_key_encrypted,
        ops_encryption_iv=launch.ops_encryption_iv,
        ops_encryption_auth_tag=launch.ops_encryption_auth_tag or "",
        is_active=True,
        launched_via_reconciler=True,
    )
    session.add(token)
    await session.commit()
    await session.refresh(token)

    logger.info(f"User token created: {token.id} ({token.token_symbol}, mint={token.token_mint_address})")
    return token


async def register_user_token(
    session: AsyncSession,
    mint_address: str,
    dev_wallet_address: str,
    dev_wallet_key_encrypted: str,
    dev_encryption_iv: str,
    ops_wallet_address: str,
    ops_wallet_key_encrypted: str,
    ops_encryption_iv: str,
    owner_id: Optional[str] = None,
    token_symbol: Optional[str] = None,
    token_name: Optional[str] = None,
    algorithm_mode: AlgorithmMode = AlgorithmMode.SIMPLE,
) -> UserToken:
    """
    Register a token together with its TokenConfig and CycleState

    This is the live registration path; all three rows are written in one
    transaction. Config values come from the mode preset.

    Returns:
        Created UserToken model with config and cycle_state loaded
    """
    preset = get_mode_preset(algorithm_mode)

    token = UserToken(
        token_mint_address=mint_address,
        token_symbol=token_symbol,
        token_name=token_name,
        owner_id=owner_id,
        dev_wallet_address=dev_wallet_address,
        dev_wallet_key_encrypted=dev_wallet_key_encrypted,
        dev_encryption_iv=dev_encryption_iv,
        ops_wallet_address=ops_wallet_address,
        ops_wallet_key_encrypted=ops_wallet_key_encrypted,
        ops_encryption_iv=ops_encryption_iv,
        is_active=True,
    )
    token.config = TokenConfig(algorithm_mode=AlgorithmMode(algorithm_mode).value, **preset.as_dict())
    token.cycle_state = CycleState(cycle_phase=CyclePhase.BUY.value, buy_count=0, sell_count=0)

    session.add(token)
    await session.commit()
    await session.refresh(token, ["config", "cycle_state"])

    logger.info(f"User token registered: {token.id} (mint={mint_address}, mode={token.config.algorithm_mode})")
    return token


async def set_token_owner_if_unset(
    session: AsyncSession, token: UserToken, owner_id: Optional[str]
) -> bool:
    """
    Propagate an owner onto a user token that has none

    Returns:
        True if the owner was written
    """
    if not owner_id or token.owner_id:
        return False

    stmt = (
        update(UserToken)
        .where(UserToken.id == token.id)
        .where(UserToken.owner_id.is_(None))
        .values(owner_id=owner_id)
    )
    result = await session.execute(stmt)
    await session.commit()

    if result.rowcount:
        token.owner_id = owner_id
        logger.info(f"User token {token.id} owner set to {owner_id}")
        return True
    return False


# ===========================
# TOKEN CONFIG OPERATIONS
# ===========================


async def get_token_config(
    session: AsyncSession, token_id: int
) -> Optional[TokenConfig]:
    """
    Get token config

    Args:
        session: Database session
        token_id: UserToken ID

    Returns:
        TokenConfig model or None
    """
    stmt = select(TokenConfig).where(TokenConfig.user_token_id == token_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_token_config(
    session: AsyncSession, token_id: int, values: Dict[str, Any]
) -> TokenConfig:
    """
    Create token config for a user token

    Args:
        session: Database session
        token_id: UserToken ID
        values: Column values (already validated)

    Returns:
        Created TokenConfig model
    """
    config = TokenConfig(user_token_id=token_id, **values)
    session.add(config)
    await session.commit()
    await session.refresh(config)

    logger.info(f"Token config created for token {token_id}: mode={config.algorithm_mode}")
    return config


async def update_token_config(
    session: AsyncSession, token_id: int, values: Dict[str, Any]
) -> Optional[TokenConfig]:
    """
    Apply a validated partial update to a token config

    Args:
        session: Database session
        token_id: UserToken ID
        values: Changed columns only

    Returns:
        Updated TokenConfig model or None if the token has no config
    """
    if values:
        stmt = (
            update(TokenConfig)
            .where(TokenConfig.user_token_id == token_id)
            .values(**values)
        )
        await session.execute(stmt)
        await session.commit()

        logger.info(f"Token config {token_id} updated: {sorted(values)}")

    config = await get_token_config(session, token_id)
    if config is not None:
        await session.refresh(config)
    return config


# ===========================
# CYCLE STATE OPERATIONS
# ===========================


async def get_cycle_state(
    session: AsyncSession, token_id: int
) -> Optional[CycleState]:
    """
    Get cycle state for a token

    Args:
        session: Database session
        token_id: UserToken ID

    Returns:
        CycleState model or None
    """
    stmt = select(CycleState).where(CycleState.user_token_id == token_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_cycle_state(session: AsyncSession, token_id: int) -> CycleState:
    """
    Create a fresh cycle state (phase=buy, counters 0/0)

    Args:
        session: Database session
        token_id: UserToken ID

    Returns:
        Created CycleState model
    """
    state = CycleState(
        user_token_id=token_id,
        cycle_phase=CyclePhase.BUY.value,
        buy_count=0,
        sell_count=0,
        consecutive_failures=0,
        total_failures=0,
    )
    session.add(state)
    await session.commit()
    await session.refresh(state)

    logger.info(f"Cycle state created for token {token_id}")
    return state


async def get_or_create_cycle_state(
    session: AsyncSession, token_id: int
) -> tuple[CycleState, bool]:
    """
    Get existing cycle state or create a fresh one

    Returns:
        Tuple of (CycleState model, is_created)
    """
    state = await get_cycle_state(session, token_id)
    if state:
        return state, False

    state = await create_cycle_state(session, token_id)
    return state, True


async def save_cycle_state(
    session: AsyncSession, token_id: int, values: Dict[str, Any]
) -> None:
    """
    Write cycle state columns for a token

    Updates the existing row; inserts one if the row is missing.

    Args:
        session: Database session
        token_id: UserToken ID
        values: Full set of CycleState columns to write
    """
    stmt = (
        update(CycleState)
        .where(CycleState.user_token_id == token_id)
        .values(**values)
    )
    result = await session.execute(stmt)

    if not result.rowcount:
        session.add(CycleState(user_token_id=token_id, **values))

    await session.commit()


async def clamp_cycle_counters(
    session: AsyncSession, token_id: int, cycle_size_buys: int, cycle_size_sells: int
) -> int:
    """
    Lower stored cycle counters that exceed the given cycle sizes

    Args:
        session: Database session
        token_id: UserToken ID
        cycle_size_buys: New buy target
        cycle_size_sells: New sell target

    Returns:
        Number of counters lowered
    """
    lowered = 0
    for column, limit in (
        (CycleState.buy_count, cycle_size_buys),
        (CycleState.sell_count, cycle_size_sells),
    ):
        stmt = (
            update(CycleState)
            .where(CycleState.user_token_id == token_id, column > limit)
            .values({column.key: limit})
        )
        result = await session.execute(stmt)
        lowered += result.rowcount or 0

    await session.commit()

    if lowered:
        logger.info(f"Cycle counters of token {token_id} lowered to {cycle_size_buys}/{cycle_size_sells}")
    return lowered


# ===========================
# LAUNCH OPERATIONS
# ===========================


async def create_pending_launch(
    session: AsyncSession,
    token_name: str,
    token_symbol: str,
    dev_wallet_address: str,
    dev_wallet_key_encrypted: str,
    dev_encryption_iv: str,
    ops_wallet_address: str,
    ops_wallet_key_encrypted: str,
    ops_encryption_iv: str,
    owner_id: Optional[str] = None,
    status: LaunchStatus = LaunchStatus.AWAITING_DEPOSIT,
    token_mint_address: Optional[str] = None,
    dev_encryption_auth_tag: Optional[str] = None,
    ops_encryption_auth_tag: Optional[str] = None,
    token_image_url: Optional[str] = None,
) -> PendingLaunch:
    """
    Create a pending launch record

    Returns:
        Created PendingLaunch model
    """
    launch = PendingLaunch(
        owner_id=owner_id,
        status=LaunchStatus(status).value,
        token_name=token_name,
        token_symbol=token_symbol,
        token_image_url=token_image_url,
        token_mint_address=token_mint_address,
        dev_wallet_address=dev_wallet_address,
        dev_wallet_key_encrypted=dev_wallet_key_encrypted,
        dev_encryption_iv=dev_encryption_iv,
        dev_encryption_auth_tag=dev_encryption_auth_tag,
        ops_wallet_address=ops_wallet_address,
        ops_wallet_key_encrypted=ops_wallet_key_encrypted,
        ops_encryption_iv=ops_encryption_iv,
        ops_encryption_auth_tag=ops_encryption_auth_tag,
    )
    session.add(launch)
    await session.commit()
    await session.refresh(launch)

    logger.info(f"Pending launch created: {launch.id} ({token_symbol}, status={launch.status})")
    return launch


async def get_pending_launch(
    session: AsyncSession, launch_id: int
) -> Optional[PendingLaunch]:
    """Get pending launch by ID."""
    stmt = select(PendingLaunch).where(PendingLaunch.id == launch_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_unlinked_completed_launch_ids(
    session: AsyncSession, limit: Optional[int] = None
) -> List[int]:
    """
    IDs of completed launches with a mint address but no linked user token

    Args:
        session: Database session
        limit: Optional batch size

    Returns:
        Launch IDs, oldest first
    """
    stmt = (
        select(PendingLaunch.id)
        .where(PendingLaunch.status == LaunchStatus.COMPLETED.value)
        .where(PendingLaunch.token_mint_address.is_not(None))
        .where(PendingLaunch.user_token_id.is_(None))
        .order_by(PendingLaunch.id)
    )
    if limit:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_linked_launches_missing_dependents(
    session: AsyncSession, limit: Optional[int] = None
) -> List[int]:
    """
    IDs of linked completed launches whose token lacks a config or cycle state

    Args:
        session: Database session
        limit: Optional batch size

    Returns:
        Launch IDs, oldest first
    """
    stmt = (
        select(PendingLaunch.id)
        .join(UserToken, UserToken.id == PendingLaunch.user_token_id)
        .outerjoin(TokenConfig, TokenConfig.user_token_id == UserToken.id)
        .outerjoin(CycleState, CycleState.user_token_id == UserToken.id)
        .where(PendingLaunch.status == LaunchStatus.COMPLETED.value)
        .where(or_(TokenConfig.id.is_(None), CycleState.id.is_(None)))
        .order_by(PendingLaunch.id)
    )
    if limit:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def link_launch_to_token(
    session: AsyncSession, launch_id: int, token_id: int
) -> bool:
    """
    Set a launch's user_token_id if it is still unlinked

    Returns:
        True if this call wrote the link
    """
    stmt = (
        update(PendingLaunch)
        .where(PendingLaunch.id == launch_id)
        .where(PendingLaunch.user_token_id.is_(None))
        .values(user_token_id=token_id)
    )
    result = await session.execute(stmt)
    await session.commit()

    linked = bool(result.rowcount)
    if linked:
        logger.info(f"Launch {launch_id} linked to user token {token_id}")
    return linked


# ===========================
# AUDIT / TRADE LEDGER
# ===========================


async def log_audit_event(
    session: AsyncSession,
    event_type: AuditEventType,
    launch_id: Optional[int] = None,
    user_token_id: Optional[int] = None,
    owner_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[AuditEvent]:
    """
    Append an audit event

    Failures are logged and swallowed: audit entries are for traceability
    and never block the caller.

    Returns:
        Created AuditEvent model or None on failure
    """
    try:
        event = AuditEvent(
            event_type=AuditEventType(event_type).value,
            launch_id=launch_id,
            user_token_id=user_token_id,
            owner_id=owner_id,
            details=details,
        )
        session.add(event)
        await session.commit()
        return event
    except Exception as e:
        await session.rollback()
        logger.warning(f"Failed to write audit event {event_type}: {e}")
        return None


async def get_audit_events(
    session: AsyncSession,
    event_type: Optional[AuditEventType] = None,
    limit: int = 100,
) -> List[AuditEvent]:
    """Latest audit events, newest first."""
    stmt = select(AuditEvent).order_by(desc(AuditEvent.id)).limit(limit)
    if event_type is not None:
        stmt = stmt.where(AuditEvent.event_type == AuditEventType(event_type).value)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_trade(
    session: AsyncSession,
    token_id: int,
    trade_type: CyclePhase,
    success: bool,
    reason: str,
    amount: Optional[float] = None,
    signature: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error: Optional[str] = None,
) -> FlywheelTrade:
    """
    Append a trade executor outcome to the ledger

    Returns:
        Created FlywheelTrade model
    """
    trade = FlywheelTrade(
        user_token_id=token_id,
        trade_type=CyclePhase(trade_type).value,
        success=success,
        reason=reason,
        amount=amount,
        signature=signature,
        latency_ms=latency_ms,
        error=error,
    )
    session.add(trade)
    await session.commit()
    return trade


async def get_recent_trades(
    session: AsyncSession, token_id: int, limit: int = 20
) -> List[FlywheelTrade]:
    """Latest ledger rows for a token, newest first."""
    stmt = (
        select(FlywheelTrade)
        .where(FlywheelTrade.user_token_id == token_id)
        .order_by(desc(FlywheelTrade.id))
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
