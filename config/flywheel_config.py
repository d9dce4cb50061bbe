"""
Flywheel algorithm presets

Defaults applied when a token is registered or switched between modes,
and the conservative config the launch reconciler creates for recovered
tokens.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict

from flywheel.core.enums import AlgorithmMode


@dataclass(frozen=True)
class ModePreset:
    """TokenConfig values consulted by the cycle state machine."""
    cycle_size_buys: int
    cycle_size_sells: int
    job_interval_seconds: int
    confirmation_timeout_seconds: int
    rate_limit_per_minute: int
    batch_state_updates: bool

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReconcileDefaults:
    """Safe TokenConfig for tokens created by the launch reconciler."""
    algorithm_mode: AlgorithmMode = AlgorithmMode.SIMPLE
    flywheel_active: bool = True
    auto_claim_enabled: bool = True
    auto_claim_threshold: float = 0.05   # SOL
    slippage_bps: int = 300
    buy_percent: float = 20.0
    sell_percent: float = 20.0


MODE_PRESETS: Dict[AlgorithmMode, ModePreset] = {
    # 5 buys then 5 sells, one trade per minute
    AlgorithmMode.SIMPLE: ModePreset(
        cycle_size_buys=5,
        cycle_size_sells=5,
        job_interval_seconds=60,
        confirmation_timeout_seconds=45,
        rate_limit_per_minute=30,
        batch_state_updates=False,
    ),
    # Larger cycles, shorter interval, batched state writes
    AlgorithmMode.TURBO: ModePreset(
        cycle_size_buys=8,
        cycle_size_sells=8,
        job_interval_seconds=15,
        confirmation_timeout_seconds=45,
        rate_limit_per_minute=60,
        batch_state_updates=True,
    ),
}

RECONCILE_DEFAULTS = ReconcileDefaults()


def get_mode_preset(mode: AlgorithmMode) -> ModePreset:
    """
    Get preset for a runnable algorithm mode

    Raises:
        KeyError: If the mode has no preset (not runnable)
    """
    return MODE_PRESETS[AlgorithmMode(mode)]


def get_reconcile_config_values() -> Dict[str, Any]:
    """Column values for a TokenConfig created during reconciliation."""
    defaults = RECONCILE_DEFAULTS
    values = get_mode_preset(defaults.algorithm_mode).as_dict()
    values.update(
        algorithm_mode=defaults.algorithm_mode.value,
        flywheel_active=defaults.flywheel_active,
        auto_claim_enabled=defaults.auto_claim_enabled,
        auto_claim_threshold=defaults.auto_claim_threshold,
        slippage_bps=defaults.slippage_bps,
        buy_percent=defaults.buy_percent,
        sell_percent=defaults.sell_percent,
    )
    return values
