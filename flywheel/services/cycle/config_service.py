"""
Token config writes

The only path that mutates TokenConfig. Payloads are validated into a
closed TokenConfigUpdate, merged with the stored row and checked as a
whole before anything is written, so an invalid config never reaches the
scheduler.
"""

from typing import Any, Dict, List, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from config.flywheel_config import get_mode_preset
from flywheel.core.enums import AlgorithmMode, AuditEventType
from flywheel.core.exceptions import TokenNotFoundError
from flywheel.database import crud
from flywheel.database.models import TokenConfig
from flywheel.services.cycle.schemas import (
    TokenConfigResponse,
    config_warnings,
    parse_config_update,
    validate_stored_config,
)


CYCLE_SIZE_FIELDS = {"cycle_size_buys", "cycle_size_sells"}


def _stored_values(config: TokenConfig) -> Dict[str, Any]:
    return TokenConfigResponse.model_validate(config).model_dump(exclude={"user_token_id"})


async def apply_config_update(
    session: AsyncSession, token_id: int, payload: Dict[str, Any], scheduler=None
) -> Tuple[TokenConfigResponse, List[str]]:
    """
    Validate and write a config update for one token

    Lowered cycle sizes also lower any counter above them, in the
    cycle_states row and in the scheduler's cached state.

    Args:
        session: Database session
        token_id: UserToken ID
        payload: Raw update payload (partial)
        scheduler: CycleScheduler running in this process, if any

    Returns:
        Tuple of (stored config, warnings)

    Raises:
        TokenNotFoundError: Unknown token
        UnsupportedAlgorithmError: algorithm_mode not runnable
        ConfigValidationError: invalid payload or merged config
    """
    token = await crud.get_user_token(session, token_id)
    if token is None:
        raise TokenNotFoundError(token_id)

    update = parse_config_update(payload)
    changes = update.changed_values()

    if token.config is not None:
        merged = {**_stored_values(token.config), **changes}
    else:
        mode = AlgorithmMode(changes.get("algorithm_mode", AlgorithmMode.SIMPLE.value))
        merged = {"algorithm_mode": mode.value, **get_mode_preset(mode).as_dict(), **changes}

    validate_stored_config(merged)
    warnings = config_warnings(merged)
    owner_id = token.owner_id

    if token.config is None:
        config = await crud.create_token_config(session, token_id, merged)
    else:
        config = await crud.update_token_config(session, token_id, changes)

    response = TokenConfigResponse.model_validate(config)

    if CYCLE_SIZE_FIELDS & changes.keys():
        await crud.clamp_cycle_counters(
            session, token_id, response.cycle_size_buys, response.cycle_size_sells
        )
        if scheduler is not None:
            await scheduler.clamp_counters(token_id, response.cycle_size_buys, response.cycle_size_sells)

    logger.info(f"Token {token_id} config updated: {sorted(changes)}")

    await crud.log_audit_event(
        session,
        AuditEventType.CONFIG_UPDATED,
        user_token_id=token_id,
        owner_id=owner_id,
        details={"changes": changes, "warnings": warnings},
    )
    return response, warnings
