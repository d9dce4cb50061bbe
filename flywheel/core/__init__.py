"""
Core module - base types, enums and exceptions for the whole engine.
"""

from flywheel.core.enums import (
    AlgorithmMode,
    CyclePhase,
    CheckResult,
    LaunchStatus,
    TradeReason,
    AuditEventType,
)
from flywheel.core.exceptions import (
    FlywheelError,
    ConfigValidationError,
    UnsupportedAlgorithmError,
    TokenNotFoundError,
    TradeExecutionError,
    PersistenceError,
)

__all__ = [
    "AlgorithmMode",
    "CyclePhase",
    "CheckResult",
    "LaunchStatus",
    "TradeReason",
    "AuditEventType",
    "FlywheelError",
    "ConfigValidationError",
    "UnsupportedAlgorithmError",
    "TokenNotFoundError",
    "TradeExecutionError",
    "PersistenceError",
]
