"""
Flywheel API Endpoints

Read-only cycle status for the UI, validated config writes and operator
actions (manual trigger, restart, reconcile, integrity audit).
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from flywheel.api.api_key_auth import verify_api_key
from flywheel.core.exceptions import ConfigValidationError, TokenNotFoundError
from flywheel.database import crud
from flywheel.database.engine import get_session
from flywheel.services.cycle import get_cycle_scheduler
from flywheel.services.cycle.config_service import apply_config_update
from flywheel.services.cycle.scheduler import token_status
from flywheel.services.cycle.schemas import (
    ConfigUpdateResponse,
    CycleStatusResponse,
    TokenConfigResponse,
)
from flywheel.services.launches.audit import audit_integrity
from flywheel.services.launches.reconciler import reconcile
from flywheel.utils.timeutils import isoformat_or_none

router = APIRouter(prefix="/flywheel", tags=["Flywheel"])


# =============================================================================
# Response Schemas
# =============================================================================

class TradeItem(BaseModel):
    """One trade ledger row."""
    trade_type: str
    success: bool
    reason: str
    amount: Optional[float] = None
    signature: Optional[str] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[str] = None


class TriggerResponse(BaseModel):
    user_token_id: int
    result: Optional[str]
    status: CycleStatusResponse


class ReconcileResponse(BaseModel):
    checked: int
    linked: int
    created: int
    partial: int
    repaired: int
    failed: int


# =============================================================================
# Helpers
# =============================================================================

def _require_scheduler():
    scheduler = get_cycle_scheduler()
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Flywheel scheduler is not running in this process")
    return scheduler


# =============================================================================
# Token Endpoints
# =============================================================================

@router.get("/tokens/{token_id}/status", response_model=CycleStatusResponse)
async def get_token_status(
    token_id: int,
    session: AsyncSession = Depends(get_session),
) -> CycleStatusResponse:
    """
    Current phase, counters and last check of a token
    """
    scheduler = get_cycle_scheduler()
    if scheduler is not None:
        try:
            return CycleStatusResponse(**await scheduler.get_token_status(token_id))
        except TokenNotFoundError:
            raise HTTPException(status_code=404, detail="Token not found")

    token = await crud.get_user_token(session, token_id)
    if token is None:
        raise HTTPException(status_code=404, detail="Token not found")
    return CycleStatusResponse(**token_status(token))


@router.get("/tokens/{token_id}/config", response_model=TokenConfigResponse)
async def get_token_config(
    token_id: int,
    session: AsyncSession = Depends(get_session),
) -> TokenConfigResponse:
    config = await crud.get_token_config(session, token_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Token config not found")
    return TokenConfigResponse.model_validate(config)


@router.put("/tokens/{token_id}/config", response_model=ConfigUpdateResponse)
async def update_token_config(
    token_id: int,
    payload: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_session),
    api_key: str = Depends(verify_api_key),
) -> ConfigUpdateResponse:
    """
    Validate and store a partial config update

    Unknown fields, unsupported algorithm modes and out-of-range values
    are rejected with 422; nothing is written in that case.
    """
    try:
        config, warnings = await apply_config_update(
            session, token_id, payload, scheduler=get_cycle_scheduler()
        )
    except TokenNotFoundError:
        raise HTTPException(status_code=404, detail="Token not found")
    except ConfigValidationError as e:
        logger.info(f"Config update rejected for token {token_id}: {e.errors}")
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})

    return ConfigUpdateResponse(config=config, warnings=warnings)


@router.get("/tokens/{token_id}/trades", response_model=List[TradeItem])
async def get_token_trades(
    token_id: int,
    limit: int = Query(20, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> List[TradeItem]:
    trades = await crud.get_recent_trades(session, token_id, limit=limit)
    return [
        TradeItem(
            trade_type=t.trade_type,
            success=t.success,
            reason=t.reason,
            amount=t.amount,
            signature=t.signature,
            latency_ms=t.latency_ms,
            error=t.error,
            created_at=isoformat_or_none(t.created_at),
        )
        for t in trades
    ]


@router.post("/tokens/{token_id}/trigger", response_model=TriggerResponse)
async def trigger_token(
    token_id: int,
    api_key: str = Depends(verify_api_key),
) -> TriggerResponse:
    """
    Run one tick for a token now (interval and pause still apply)
    """
    scheduler = _require_scheduler()
    try:
        result = await scheduler.trigger(token_id)
        status = await scheduler.get_token_status(token_id)
    except TokenNotFoundError:
        raise HTTPException(status_code=404, detail="Token not found")

    return TriggerResponse(
        user_token_id=token_id,
        result=result.value if result else None,
        status=CycleStatusResponse(**status),
    )


# =============================================================================
# Job / Operator Endpoints
# =============================================================================

@router.get("/job/status")
async def get_job_status() -> Dict[str, Any]:
    scheduler = get_cycle_scheduler()
    if scheduler is None:
        return {"running": False, "scheduled_tokens": 0, "jobs": []}
    return scheduler.get_status()


@router.post("/job/run")
async def run_cycle_now(api_key: str = Depends(verify_api_key)) -> Dict[str, Any]:
    """Tick every active token once."""
    scheduler = _require_scheduler()
    results = await scheduler.run_cycle()
    return {"tokens": len(results), "results": {str(k): v for k, v in results.items()}}


@router.post("/job/restart")
async def restart_job(api_key: str = Depends(verify_api_key)) -> Dict[str, Any]:
    scheduler = _require_scheduler()
    await scheduler.restart()
    return scheduler.get_status()


@router.post("/reconcile", response_model=ReconcileResponse)
async def run_reconcile(api_key: str = Depends(verify_api_key)) -> ReconcileResponse:
    """Link completed launches to user tokens now."""
    stats = await reconcile()
    return ReconcileResponse(**stats.to_dict())


@router.get("/audit")
async def get_integrity_audit(api_key: str = Depends(verify_api_key)) -> Dict[str, Any]:
    report = await audit_integrity()
    return report.to_dict()
