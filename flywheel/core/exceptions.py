"""
Exception hierarchy for the flywheel engine.
"""

from typing import List, Optional


class FlywheelError(Exception):
    """Base class for all engine errors."""


class ConfigValidationError(FlywheelError):
    """Token configuration rejected at write time."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class UnsupportedAlgorithmError(ConfigValidationError):
    """Algorithm mode is known but not runnable (e.g. rebalance)."""


class TokenNotFoundError(FlywheelError):
    """No UserToken with the given id."""

    def __init__(self, token_id: int):
        super().__init__(f"User token {token_id} not found")
        self.token_id = token_id


class TradeExecutionError(FlywheelError):
    """Trade executor failed in a way it could not report as an outcome."""


class PersistenceError(FlywheelError):
    """Cycle state could not be written; in-memory state stays authoritative."""
