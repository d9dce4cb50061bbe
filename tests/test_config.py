"""
Unit tests for configuration
"""

import os
from importlib import reload

import pytest

from config.flywheel_config import (
    MODE_PRESETS,
    get_mode_preset,
    get_reconcile_config_values,
)
from flywheel.core.enums import AlgorithmMode


def test_config_loading():
    """Test that configuration loads correctly"""
    from config.config import (
        MAX_TRADES_PER_MINUTE,
        RATE_LIMIT_WINDOW_SECONDS,
        STATE_FLUSH_INTERVAL_SECONDS,
        MAX_CONSECUTIVE_FAILURES,
        PAUSE_DURATION_MINUTES,
        RECONCILE_INTERVAL_MINUTES,
    )

    # Test default values
    assert MAX_TRADES_PER_MINUTE == 30
    assert RATE_LIMIT_WINDOW_SECONDS == 60
    assert STATE_FLUSH_INTERVAL_SECONDS == 30
    assert MAX_CONSECUTIVE_FAILURES == 5
    assert PAUSE_DURATION_MINUTES == 30
    assert RECONCILE_INTERVAL_MINUTES == 10


def test_mode_presets():
    simple = get_mode_preset(AlgorithmMode.SIMPLE)
    turbo = get_mode_preset(AlgorithmMode.TURBO)

    assert (simple.cycle_size_buys, simple.cycle_size_sells) == (5, 5)
    assert simple.job_interval_seconds == 60
    assert simple.batch_state_updates is False

    # Turbo: larger cycles, shorter interval
    assert turbo.cycle_size_buys > simple.cycle_size_buys
    assert turbo.job_interval_seconds < simple.job_interval_seconds
    assert turbo.batch_state_updates is True


def test_rebalance_has_no_preset():
    assert AlgorithmMode.REBALANCE not in MODE_PRESETS
    with pytest.raises(KeyError):
        get_mode_preset(AlgorithmMode.REBALANCE)


def test_reconcile_defaults_are_runnable():
    values = get_reconcile_config_values()

    assert values["algorithm_mode"] == "simple"
    assert values["cycle_size_buys"] >= 1
    assert values["cycle_size_sells"] >= 1
    assert values["flywheel_active"] is True


def test_flywheel_enabled_parsing():
    """Test FLYWHEEL_ENABLED parsing"""
    import config.config as cfg

    os.environ["FLYWHEEL_ENABLED"] = "false"
    reload(cfg)
    assert cfg.FLYWHEEL_ENABLED is False

    os.environ["FLYWHEEL_ENABLED"] = "true"
    reload(cfg)
    assert cfg.FLYWHEEL_ENABLED is True

    # Test default (unset)
    del os.environ["FLYWHEEL_ENABLED"]
    reload(cfg)
    assert cfg.FLYWHEEL_ENABLED is True


def test_validate_config(monkeypatch):
    import config.config as cfg

    assert cfg.validate_config() is True

    monkeypatch.setattr(cfg, "MAX_TRADES_PER_MINUTE", 0)
    monkeypatch.setattr(cfg, "STATE_FLUSH_INTERVAL_SECONDS", cfg.MAX_STATE_FLUSH_INTERVAL_SECONDS + 1)
    assert cfg.validate_config() is False
