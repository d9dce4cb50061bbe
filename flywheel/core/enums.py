"""
Core Enums - shared types for the flywheel engine.

Defines:
- AlgorithmMode: trading algorithm selected per token
- CyclePhase: current half of a buy/sell cycle
- CheckResult: outcome of the most recent scheduler tick
- LaunchStatus: lifecycle of a pending token launch
- TradeReason: result reason reported by the trade executor
- AuditEventType: traceability events written by the engine
"""

from enum import Enum


class AlgorithmMode(str, Enum):
    """Trading algorithm for a token.

    SIMPLE and TURBO run the same state machine with different
    TokenConfig values. REBALANCE exists in stored data but is not
    runnable and is rejected on config write.
    """

    SIMPLE = "simple"
    TURBO = "turbo"
    REBALANCE = "rebalance"

    @classmethod
    def runnable(cls) -> list["AlgorithmMode"]:
        """Modes the scheduler can execute."""
        return [cls.SIMPLE, cls.TURBO]

    def is_runnable(self) -> bool:
        return self in self.runnable()


class CyclePhase(str, Enum):
    """Half of a trading cycle."""

    BUY = "buy"
    SELL = "sell"

    def opposite(self) -> "CyclePhase":
        return CyclePhase.SELL if self is CyclePhase.BUY else CyclePhase.BUY


class CheckResult(str, Enum):
    """Result recorded on CycleState after every evaluated tick."""

    TRADED = "traded"  # trade filled, counter advanced
    INSUFFICIENT_FUNDS = "insufficient_funds"  # informational, no retry storm
    BALANCED = "balanced"  # phase target reached, phase flipped
    RATE_LIMITED = "rate_limited"  # global limiter denied capacity
    ERROR = "error"  # timeout / chain error, retried next tick

    def is_failure(self) -> bool:
        """Only errors count towards the auto-pause threshold."""
        return self is CheckResult.ERROR


class LaunchStatus(str, Enum):
    """Pending launch lifecycle (driven by the external launch pipeline)."""

    AWAITING_DEPOSIT = "awaiting_deposit"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


class TradeReason(str, Enum):
    """Reason reported by the trade executor."""

    FILLED = "filled"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TIMEOUT = "timeout"
    CHAIN_ERROR = "chain_error"


class AuditEventType(str, Enum):
    """Append-only audit log event types."""

    USER_TOKEN_CREATED = "user_token_created"
    TOKEN_CONFIG_CREATED = "token_config_created"
    CYCLE_STATE_CREATED = "cycle_state_created"
    LAUNCH_LINKED = "launch_linked"
    OWNER_PROPAGATED = "owner_propagated"
    RECONCILE_FAILED = "reconcile_failed"
    CONFIG_UPDATED = "config_updated"
    FLYWHEEL_PAUSED = "flywheel_paused"
    FEE_CLAIM_TRIGGERED = "fee_claim_triggered"
