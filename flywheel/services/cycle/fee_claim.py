"""
Auto-claim of creator fees

Runs on its own schedule next to the cycle jobs. For every active token
with auto_claim_enabled, the claimable balance is read and a claim is
triggered once it reaches auto_claim_threshold.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flywheel.core.enums import AuditEventType
from flywheel.database import crud
from flywheel.database.engine import get_session_maker
from flywheel.services.cycle.executor import FeeClaimService


@dataclass
class AutoClaimStats:
    checked: int = 0
    claimed: int = 0
    below_threshold: int = 0
    failed: int = 0


async def run_auto_claim(
    claim_service: FeeClaimService,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AutoClaimStats:
    """
    One auto-claim pass over all eligible tokens

    Args:
        claim_service: Balance reader / claim submitter
        session_maker: Optional session factory (defaults to the engine's)

    Returns:
        AutoClaimStats
    """
    session_maker = session_maker or get_session_maker()
    stats = AutoClaimStats()

    async with session_maker() as session:
        tokens = await crud.get_tokens_for_auto_claim(session)

    for token in tokens:
        stats.checked += 1
        threshold = token.config.auto_claim_threshold

        try:
            balance = await claim_service.get_claimable_balance(token)
            # Nothing to claim, even with a zero threshold
            if balance <= 0 or balance < threshold:
                stats.below_threshold += 1
                continue

            claimed = await claim_service.claim_fees(token)
        except Exception as e:
            stats.failed += 1
            logger.error(f"Auto-claim failed for token {token.id}: {e}")
            continue

        if not claimed:
            stats.failed += 1
            continue

        stats.claimed += 1
        logger.info(f"Fee claim triggered for token {token.id}: balance={balance:.4f} >= {threshold}")

        async with session_maker() as session:
            await crud.log_audit_event(
                session,
                AuditEventType.FEE_CLAIM_TRIGGERED,
                user_token_id=token.id,
                owner_id=token.owner_id,
                details={"balance": balance, "threshold": threshold},
            )

    if stats.checked:
        logger.info(
            f"Auto-claim pass: checked={stats.checked}, claimed={stats.claimed}, "
            f"below_threshold={stats.below_threshold}, failed={stats.failed}"
        )
    return stats
