"""
Flywheel database integrity audit

Read-only report over launches, tokens, configs and cycle states. Used by
scripts/audit_flywheel_records.py and GET /flywheel/audit; nothing here
repairs data (reconcile() does that for unlinked launches).
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flywheel.core.enums import AlgorithmMode, CyclePhase, LaunchStatus
from flywheel.database.engine import get_session_maker
from flywheel.database.models import (
    AuditEvent,
    CycleState,
    PendingLaunch,
    TokenConfig,
    UserToken,
)


@dataclass
class IntegrityReport:
    launch_status_counts: Dict[str, int] = field(default_factory=dict)
    user_tokens: int = 0
    active_tokens: int = 0
    active_flywheels: int = 0
    paused_tokens: int = 0

    unlinked_completed_launches: List[int] = field(default_factory=list)
    completed_without_mint: List[int] = field(default_factory=list)
    tokens_without_config: List[int] = field(default_factory=list)
    tokens_without_cycle_state: List[int] = field(default_factory=list)
    unsupported_mode_configs: List[int] = field(default_factory=list)
    invalid_cycle_sizes: List[int] = field(default_factory=list)
    counter_overflows: List[int] = field(default_factory=list)
    audit_event_counts: Dict[str, int] = field(default_factory=dict)

    def issues(self) -> Dict[str, List[int]]:
        """Non-empty problem lists only."""
        names = (
            "unlinked_completed_launches",
            "completed_without_mint",
            "tokens_without_config",
            "tokens_without_cycle_state",
            "unsupported_mode_configs",
            "invalid_cycle_sizes",
            "counter_overflows",
        )
        return {name: getattr(self, name) for name in names if getattr(self, name)}

    @property
    def healthy(self) -> bool:
        return not self.issues()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["healthy"] = self.healthy
        return data


async def _ids(session: AsyncSession, stmt) -> List[int]:
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def audit_integrity(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> IntegrityReport:
    """
    Build an integrity report for the flywheel tables

    Returns:
        IntegrityReport
    """
    session_maker = session_maker or get_session_maker()
    report = IntegrityReport()

    async with session_maker() as session:
        result = await session.execute(
            select(PendingLaunch.status, func.count()).group_by(PendingLaunch.status)
        )
        report.launch_status_counts = {status: count for status, count in result.all()}

        report.user_tokens = await session.scalar(select(func.count()).select_from(UserToken)) or 0
        report.active_tokens = await session.scalar(
            select(func.count()).select_from(UserToken).where(UserToken.is_active.is_(True))
        ) or 0
        report.active_flywheels = await session.scalar(
            select(func.count()).select_from(TokenConfig).where(TokenConfig.flywheel_active.is_(True))
        ) or 0
        report.paused_tokens = await session.scalar(
            select(func.count()).select_from(CycleState).where(CycleState.paused_until.is_not(None))
        ) or 0

        completed = PendingLaunch.status == LaunchStatus.COMPLETED.value

        report.unlinked_completed_launches = await _ids(
            session,
            select(PendingLaunch.id)
            .where(completed)
            .where(PendingLaunch.token_mint_address.is_not(None))
            .where(PendingLaunch.user_token_id.is_(None))
            .order_by(PendingLaunch.id),
        )
        report.completed_without_mint = await _ids(
            session,
            select(PendingLaunch.id)
            .where(completed)
            .where(PendingLaunch.token_mint_address.is_(None))
            .order_by(PendingLaunch.id),
        )

        report.tokens_without_config = await _ids(
            session,
            select(UserToken.id)
            .outerjoin(TokenConfig, TokenConfig.user_token_id == UserToken.id)
            .where(TokenConfig.id.is_(None))
            .order_by(UserToken.id),
        )
        report.tokens_without_cycle_state = await _ids(
            session,
            select(UserToken.id)
            .outerjoin(CycleState, CycleState.user_token_id == UserToken.id)
            .where(CycleState.id.is_(None))
            .order_by(UserToken.id),
        )

        runnable = [m.value for m in AlgorithmMode.runnable()]
        report.unsupported_mode_configs = await _ids(
            session,
            select(TokenConfig.user_token_id)
            .where(TokenConfig.algorithm_mode.not_in(runnable))
            .order_by(TokenConfig.user_token_id),
        )
        report.invalid_cycle_sizes = await _ids(
            session,
            select(TokenConfig.user_token_id)
            .where(or_(TokenConfig.cycle_size_buys < 1, TokenConfig.cycle_size_sells < 1))
            .order_by(TokenConfig.user_token_id),
        )

        # Counter above target is legal only until the next flip after a cycle size was lowered
        report.counter_overflows = await _ids(
            session,
            select(CycleState.user_token_id)
            .join(TokenConfig, TokenConfig.user_token_id == CycleState.user_token_id)
            .where(
                or_(
                    and_(
                        CycleState.cycle_phase == CyclePhase.BUY.value,
                        CycleState.buy_count > TokenConfig.cycle_size_buys,
                    ),
                    and_(
                        CycleState.cycle_phase == CyclePhase.SELL.value,
                        CycleState.sell_count > TokenConfig.cycle_size_sells,
                    ),
                )
            )
            .order_by(CycleState.user_token_id),
        )

        result = await session.execute(
            select(AuditEvent.event_type, func.count()).group_by(AuditEvent.event_type)
        )
        report.audit_event_counts = {event_type: count for event_type, count in result.all()}

    if report.healthy:
        logger.info(
            f"Integrity audit OK: {report.user_tokens} tokens, "
            f"{report.active_flywheels} active flywheels"
        )
    else:
        for name, ids in report.issues().items():
            logger.warning(f"Integrity audit: {name}: {len(ids)} ({ids[:10]})")

    return report
