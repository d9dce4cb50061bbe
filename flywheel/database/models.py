"""
Database models for the Flywheel Engine

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    String,
    Text,
    Integer,
    Float,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from flywheel.core.enums import (
    AlgorithmMode,
    CyclePhase,
    LaunchStatus,
)


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ===========================
# MODELS
# ===========================


class UserToken(Base):
    """
    Canonical record of a token under flywheel management

    Exactly one row per mint address. Owns its TokenConfig and CycleState
    (1:1, cascade delete). Wallet key material is stored encrypted and is
    never decrypted by the engine.
    """

    __tablename__ = "user_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    token_mint_address: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False, comment="Token mint address (unique)"
    )
    token_symbol: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    token_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    token_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    owner_id: Mapped[Optional[str]] = mapped_column(
        String(64), index=True, nullable=True, comment="Owning user reference (external id)"
    )

    # Dev wallet (receives creator fees)
    dev_wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    dev_wallet_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    dev_encryption_iv: Mapped[str] = mapped_column(String(64), nullable=False)
    dev_encryption_auth_tag: Mapped[str] = mapped_column(String(64), default="", nullable=False)

    # Ops wallet (trades)
    ops_wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    ops_wallet_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    ops_encryption_iv: Mapped[str] = mapped_column(String(64), nullable=False)
    ops_encryption_auth_tag: Mapped[str] = mapped_column(String(64), default="", nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    launched_via_reconciler: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="Created by launch reconciliation"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    # Relationships
    config: Mapped[Optional["TokenConfig"]] = relationship(
        "TokenConfig", back_populates="user_token", uselist=False, cascade="all, delete-orphan"
    )
    cycle_state: Mapped[Optional["CycleState"]] = relationship(
        "CycleState", back_populates="user_token", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<UserToken(id={self.id}, mint={self.token_mint_address}, symbol={self.token_symbol})>"


class TokenConfig(Base):
    """
    Per-token trading parameters

    Read-only to the engine; written only through validated config updates
    (see flywheel.services.cycle.schemas) or by the reconciler with safe
    defaults.
    """

    __tablename__ = "token_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_token_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_tokens.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )

    flywheel_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    algorithm_mode: Mapped[str] = mapped_column(
        String(20), default=AlgorithmMode.SIMPLE.value, nullable=False, comment="simple | turbo"
    )

    # Cycle shape
    cycle_size_buys: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    cycle_size_sells: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    job_interval_seconds: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    confirmation_timeout_seconds: Mapped[int] = mapped_column(Integer, default=45, nullable=False)
    rate_limit_per_minute: Mapped[int] = mapped_column(
        Integer, default=30, nullable=False, comment="Share of the global limiter (soft)"
    )
    batch_state_updates: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Trade sizing, forwarded to the executor
    slippage_bps: Mapped[int] = mapped_column(Integer, default=300, nullable=False)
    buy_percent: Mapped[float] = mapped_column(Float, default=20.0, nullable=False)
    sell_percent: Mapped[float] = mapped_column(Float, default=20.0, nullable=False)

    # Fee claiming
    auto_claim_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_claim_threshold: Mapped[float] = mapped_column(Float, default=0.05, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    user_token: Mapped["UserToken"] = relationship("UserToken", back_populates="config")

    __table_args__ = (
        CheckConstraint(
            "algorithm_mode IN ('simple', 'turbo', 'rebalance')",
            name="ck_token_configs_algorithm_mode",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TokenConfig(token={self.user_token_id}, mode={self.algorithm_mode}, "
            f"cycle={self.cycle_size_buys}/{self.cycle_size_sells})>"
        )


class CycleState(Base):
    """
    Per-token mutable flywheel state

    Written by the State Updater only. Counters never exceed the configured
    cycle sizes and both reset to 0 on a phase flip.
    """

    __tablename__ = "cycle_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_token_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_tokens.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )

    cycle_phase: Mapped[str] = mapped_column(
        String(10), default=CyclePhase.BUY.value, nullable=False, comment="buy | sell"
    )
    buy_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sell_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    last_trade_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_check_result: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Failure tracking / auto-pause
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Flywheel paused until (NULL = not paused)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    user_token: Mapped["UserToken"] = relationship("UserToken", back_populates="cycle_state")

    __table_args__ = (
        Index("idx_cycle_states_paused", "paused_until"),
    )

    def __repr__(self) -> str:
        return (
            f"<CycleState(token={self.user_token_id}, phase={self.cycle_phase}, "
            f"buys={self.buy_count}, sells={self.sell_count})>"
        )


class PendingLaunch(Base):
    """
    Token creation request in flight

    Driven by the external launch pipeline; the reconciler only fills in
    user_token_id. Retained indefinitely as an audit trail.
    """

    __tablename__ = "pending_launches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    owner_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), default=LaunchStatus.AWAITING_DEPOSIT.value, nullable=False, index=True
    )

    token_name: Mapped[str] = mapped_column(String(255), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    token_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_mint_address: Mapped[Optional[str]] = mapped_column(
        String(64), index=True, nullable=True, comment="Set once chain-confirmed"
    )

    dev_wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    dev_wallet_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    dev_encryption_iv: Mapped[str] = mapped_column(String(64), nullable=False)
    dev_encryption_auth_tag: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    ops_wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    ops_wallet_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    ops_encryption_iv: Mapped[str] = mapped_column(String(64), nullable=False)
    ops_encryption_auth_tag: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    user_token_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("user_tokens.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Lookup-only link to the resulting UserToken",
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_pending_launches_status_link", "status", "user_token_id"),
    )

    def __repr__(self) -> str:
        return f"<PendingLaunch(id={self.id}, status={self.status}, mint={self.token_mint_address})>"


class AuditEvent(Base):
    """
    Append-only audit log entry

    Never mutated and never required for correctness.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    launch_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    user_token_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, type={self.event_type})>"


class FlywheelTrade(Base):
    """
    Ledger of trade executor calls made by the scheduler
    """

    __tablename__ = "flywheel_trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_token_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_tokens.id", ondelete="CASCADE"), nullable=False, index=True
    )

    trade_type: Mapped[str] = mapped_column(String(10), nullable=False)  # buy | sell
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<FlywheelTrade(token={self.user_token_id}, type={self.trade_type}, success={self.success})>"
