"""
Launch Reconciler

Repairs the invariant "every completed launch with a mint address is
linked to an existing UserToken".

For each completed, unlinked launch (oldest first):
- a UserToken with the same mint exists -> link it, set its owner if unset
- otherwise -> create UserToken, TokenConfig (reconcile defaults),
  CycleState (buy, 0/0), then link

Each launch runs in its own session and transaction scope, so a failure
or a shutdown mid-run leaves the other launches untouched and the next
run picks up where this one stopped. A failed TokenConfig / CycleState
insert is logged and the link is still written. Every run starts with a
repair pass that creates the missing dependents of such linked tokens.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.flywheel_config import get_reconcile_config_values
from flywheel.core.enums import AuditEventType, LaunchStatus
from flywheel.database import crud
from flywheel.database.engine import get_session_maker


@dataclass
class ReconcileStats:
    checked: int = 0
    linked: int = 0  # linked to a token that already existed
    created: int = 0  # new token created and linked
    partial: int = 0  # token linked, a dependent insert failed
    repaired: int = 0  # missing dependents of a linked token created
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class _LaunchRef:
    """Plain copy of the launch fields used after a rollback."""
    id: int
    owner_id: Optional[str]
    mint: str
    symbol: str


def _mask(address: Optional[str]) -> str:
    if not address:
        return "-"
    return f"{address[:8]}..."


async def reconcile(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    limit: Optional[int] = None,
) -> ReconcileStats:
    """
    Link or create UserTokens for completed launches

    Safe to re-run at any point; a second run with no new completed
    launches creates nothing.

    Args:
        session_maker: Optional session factory (defaults to the engine's)
        limit: Optional maximum number of launches per run

    Returns:
        ReconcileStats
    """
    session_maker = session_maker or get_session_maker()
    stats = ReconcileStats()

    async with session_maker() as session:
        repair_ids = await crud.get_linked_launches_missing_dependents(session, limit=limit)
        launch_ids = await crud.get_unlinked_completed_launch_ids(session, limit=limit)

    if repair_ids:
        logger.info(f"Reconcile: {len(repair_ids)} linked token(s) missing config or cycle state")
    for launch_id in repair_ids:
        await _isolated(session_maker, launch_id, stats, _repair_launch)

    if not launch_ids:
        logger.debug("Reconcile: no unlinked completed launches")
        return stats

    logger.info(f"Reconcile: {len(launch_ids)} completed launch(es) without a user token")

    for launch_id in launch_ids:
        stats.checked += 1
        await _isolated(session_maker, launch_id, stats, _reconcile_launch)

    logger.info(
        f"Reconcile complete: checked={stats.checked}, created={stats.created}, "
        f"linked={stats.linked}, partial={stats.partial}, repaired={stats.repaired}, "
        f"failed={stats.failed}"
    )
    return stats


async def _isolated(session_maker, launch_id: int, stats: ReconcileStats, step) -> None:
    """Run one per-launch step in its own session; failures are counted and audited."""
    async with session_maker() as session:
        try:
            await step(session, launch_id, stats)
        except Exception as e:
            stats.failed += 1
            await session.rollback()
            logger.exception(f"Reconcile failed for launch {launch_id}: {e}")
            await crud.log_audit_event(
                session,
                AuditEventType.RECONCILE_FAILED,
                launch_id=launch_id,
                details={"error": str(e)[:500]},
            )


async def _reconcile_launch(session: AsyncSession, launch_id: int, stats: ReconcileStats) -> None:
    launch = await crud.get_pending_launch(session, launch_id)

    # Re-check: another run or the live pipeline may have linked it meanwhile
    if (
        launch is None
        or launch.user_token_id is not None
        or launch.status != LaunchStatus.COMPLETED.value
        or not launch.token_mint_address
    ):
        logger.debug(f"Reconcile: launch {launch_id} no longer needs reconciliation")
        return

    ref = _LaunchRef(
        id=launch.id,
        owner_id=launch.owner_id,
        mint=launch.token_mint_address,
        symbol=launch.token_symbol,
    )
    logger.info(
        f"Reconcile: launch {ref.id} {ref.symbol} "
        f"(mint={ref.mint}, dev={_mask(launch.dev_wallet_address)})"
    )

    token = await crud.get_user_token_by_mint(session, ref.mint)
    if token is not None:
        await _link_existing(session, ref, token)
        stats.linked += 1
        return

    try:
        token = await crud.create_user_token_from_launch(session, launch)
    except IntegrityError:
        # Lost a race with the live launch pipeline: the mint exists now
        await session.rollback()
        token = await crud.get_user_token_by_mint(session, ref.mint)
        if token is None:
            raise
        logger.info(f"Reconcile: mint {ref.mint} created concurrently, linking")
        await _link_existing(session, ref, token)
        stats.linked += 1
        return

    token_id = token.id
    await crud.log_audit_event(
        session,
        AuditEventType.USER_TOKEN_CREATED,
        launch_id=ref.id,
        user_token_id=token_id,
        owner_id=ref.owner_id,
        details={"mint": ref.mint, "symbol": ref.symbol},
    )

    complete = await _create_dependents(session, ref, token_id)

    await _link(session, ref, token_id)

    if complete:
        stats.created += 1
        logger.info(f"Reconcile: launch {ref.id} -> new user token {token_id}")
    else:
        stats.partial += 1
        logger.warning(f"Reconcile: launch {ref.id} linked to token {token_id} with missing dependents")


async def _repair_launch(session: AsyncSession, launch_id: int, stats: ReconcileStats) -> None:
    launch = await crud.get_pending_launch(session, launch_id)
    if launch is None or launch.user_token_id is None:
        return

    token_id = launch.user_token_id
    ref = _LaunchRef(
        id=launch.id,
        owner_id=launch.owner_id,
        mint=launch.token_mint_address,
        symbol=launch.token_symbol,
    )
    needs_config = await crud.get_token_config(session, token_id) is None
    needs_state = await crud.get_cycle_state(session, token_id) is None
    if not (needs_config or needs_state):
        return

    if await _create_dependents(session, ref, token_id, config=needs_config, cycle_state=needs_state):
        stats.repaired += 1
        logger.info(f"Reconcile: token {token_id} (launch {ref.id}) dependents repaired")
    else:
        stats.partial += 1
        logger.warning(f"Reconcile: token {token_id} (launch {ref.id}) still missing dependents")


async def _create_dependents(
    session: AsyncSession,
    ref: _LaunchRef,
    token_id: int,
    config: bool = True,
    cycle_state: bool = True,
) -> bool:
    """Create TokenConfig and / or CycleState; each failure is logged, not raised."""
    complete = True

    if config:
        complete = await _create_config(session, ref, token_id)
    if cycle_state:
        complete = await _create_cycle_state(session, ref, token_id) and complete
    return complete


async def _create_config(session: AsyncSession, ref: _LaunchRef, token_id: int) -> bool:
    try:
        values = get_reconcile_config_values()
        await crud.create_token_config(session, token_id, values)
        await crud.log_audit_event(
            session,
            AuditEventType.TOKEN_CONFIG_CREATED,
            launch_id=ref.id,
            user_token_id=token_id,
            owner_id=ref.owner_id,
            details={"algorithm_mode": values["algorithm_mode"]},
        )
    except Exception as e:
        await session.rollback()
        logger.error(f"Reconcile: token config insert failed for token {token_id}: {e}")
        return False
    return True


async def _create_cycle_state(session: AsyncSession, ref: _LaunchRef, token_id: int) -> bool:
    try:
        await crud.create_cycle_state(session, token_id)
        await crud.log_audit_event(
            session,
            AuditEventType.CYCLE_STATE_CREATED,
            launch_id=ref.id,
            user_token_id=token_id,
            owner_id=ref.owner_id,
        )
    except Exception as e:
        await session.rollback()
        logger.error(f"Reconcile: cycle state insert failed for token {token_id}: {e}")
        return False
    return True


async def _link_existing(session: AsyncSession, ref: _LaunchRef, token) -> None:
    token_id = token.id
    if await crud.set_token_owner_if_unset(session, token, ref.owner_id):
        await crud.log_audit_event(
            session,
            AuditEventType.OWNER_PROPAGATED,
            launch_id=ref.id,
            user_token_id=token_id,
            owner_id=ref.owner_id,
        )

    await _link(session, ref, token_id)


async def _link(session: AsyncSession, ref: _LaunchRef, token_id: int) -> None:
    if await crud.link_launch_to_token(session, ref.id, token_id):
        await crud.log_audit_event(
            session,
            AuditEventType.LAUNCH_LINKED,
            launch_id=ref.id,
            user_token_id=token_id,
            owner_id=ref.owner_id,
        )
