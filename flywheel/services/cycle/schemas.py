"""
Flywheel config / status schemas - pydantic models.

TokenConfigUpdate is the only accepted shape for per-token config writes:
closed (unknown keys rejected), enumerated algorithm modes, range checks.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config.flywheel_config import get_mode_preset
from flywheel.core.enums import AlgorithmMode, CheckResult, CyclePhase
from flywheel.core.exceptions import ConfigValidationError, UnsupportedAlgorithmError


class TokenConfigUpdate(BaseModel):
    """Partial TokenConfig update. Omitted fields keep their stored value."""

    model_config = ConfigDict(extra="forbid")

    flywheel_active: Optional[bool] = None
    algorithm_mode: Optional[AlgorithmMode] = None
    apply_mode_preset: bool = Field(
        default=False, description="Reset cycle fields to the preset of algorithm_mode"
    )

    cycle_size_buys: Optional[int] = Field(default=None, ge=1, le=100)
    cycle_size_sells: Optional[int] = Field(default=None, ge=1, le=100)
    job_interval_seconds: Optional[int] = Field(default=None, ge=1, le=86400)
    confirmation_timeout_seconds: Optional[int] = Field(default=None, ge=1, le=600)
    rate_limit_per_minute: Optional[int] = Field(default=None, ge=1, le=1000)
    batch_state_updates: Optional[bool] = None

    slippage_bps: Optional[int] = Field(default=None, ge=1, le=5000)
    buy_percent: Optional[float] = Field(default=None, gt=0, le=100)
    sell_percent: Optional[float] = Field(default=None, gt=0, le=100)

    auto_claim_enabled: Optional[bool] = None
    auto_claim_threshold: Optional[float] = Field(default=None, ge=0)

    @field_validator("algorithm_mode")
    @classmethod
    def mode_must_be_runnable(cls, value: Optional[AlgorithmMode]) -> Optional[AlgorithmMode]:
        if value is not None and not value.is_runnable():
            raise ValueError(f"algorithm mode '{value.value}' is not supported")
        return value

    def changed_values(self) -> Dict[str, Any]:
        """Column values to write, presets expanded, enums flattened."""
        values = self.model_dump(exclude_none=True, exclude={"apply_mode_preset"})

        if self.apply_mode_preset and self.algorithm_mode is not None:
            preset = get_mode_preset(self.algorithm_mode).as_dict()
            # Explicit fields win over the preset
            values = {**preset, **values}

        if "algorithm_mode" in values:
            values["algorithm_mode"] = AlgorithmMode(values["algorithm_mode"]).value
        return values


def parse_config_update(payload: Dict[str, Any]) -> TokenConfigUpdate:
    """
    Validate a loosely-typed config payload

    Raises:
        UnsupportedAlgorithmError: algorithm_mode is known but not runnable
        ConfigValidationError: any other validation failure
    """
    mode = payload.get("algorithm_mode")
    if mode == AlgorithmMode.REBALANCE.value:
        raise UnsupportedAlgorithmError(f"algorithm mode '{mode}' is not supported")

    try:
        return TokenConfigUpdate.model_validate(payload)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigValidationError("Invalid token config", errors=errors) from e


def validate_stored_config(values: Dict[str, Any]) -> None:
    """
    Check a full merged config before it is written

    Raises:
        UnsupportedAlgorithmError / ConfigValidationError
    """
    errors: List[str] = []

    mode = values.get("algorithm_mode")
    try:
        if not AlgorithmMode(mode).is_runnable():
            raise UnsupportedAlgorithmError(f"algorithm mode '{mode}' is not supported")
    except ValueError:
        errors.append(f"algorithm_mode: unknown mode '{mode}'")

    for field in ("cycle_size_buys", "cycle_size_sells", "job_interval_seconds",
                  "confirmation_timeout_seconds", "rate_limit_per_minute"):
        if int(values.get(field) or 0) < 1:
            errors.append(f"{field}: must be >= 1")

    if errors:
        raise ConfigValidationError("Invalid token config", errors=errors)


def config_warnings(values: Dict[str, Any]) -> List[str]:
    """
    Non-fatal configuration warnings

    The interval should leave room for one phase worth of confirmations.
    """
    warnings: List[str] = []

    longest_phase = max(values["cycle_size_buys"], values["cycle_size_sells"])
    needed = longest_phase * values["confirmation_timeout_seconds"]
    if values["job_interval_seconds"] < needed:
        warnings.append(
            f"job_interval_seconds={values['job_interval_seconds']} is shorter than one phase of "
            f"confirmations ({longest_phase} x {values['confirmation_timeout_seconds']}s = {needed}s)"
        )

    for warning in warnings:
        logger.warning(f"Token config warning: {warning}")
    return warnings


class TokenConfigResponse(BaseModel):
    """Stored TokenConfig."""

    model_config = ConfigDict(from_attributes=True)

    user_token_id: int
    flywheel_active: bool
    algorithm_mode: str
    cycle_size_buys: int
    cycle_size_sells: int
    job_interval_seconds: int
    confirmation_timeout_seconds: int
    rate_limit_per_minute: int
    batch_state_updates: bool
    slippage_bps: int
    buy_percent: float
    sell_percent: float
    auto_claim_enabled: bool
    auto_claim_threshold: float


class ConfigUpdateResponse(BaseModel):
    config: TokenConfigResponse
    warnings: List[str] = []


class CycleStatusResponse(BaseModel):
    """Read-only CycleState fields for the UI."""

    user_token_id: int
    phase: CyclePhase
    buy_count: int
    sell_count: int
    cycle_size_buys: Optional[int] = None
    cycle_size_sells: Optional[int] = None
    last_trade_at: Optional[datetime] = None
    last_check_at: Optional[datetime] = None
    last_check_result: Optional[CheckResult] = None
    consecutive_failures: int = 0
    total_failures: int = 0
    paused_until: Optional[datetime] = None
    source: str = Field(default="database", description="database | memory")
