"""SQLAlchemy ORM models for the decision ledger.

Two schemas share one column layout. The shared store serves every trading
unit and tags rows with ``trader_id``; the embedded store belongs to a single
unit and has no identity column.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class SharedBase(DeclarativeBase):
    """Declarative base for the multi-tenant store."""


class EmbeddedBase(DeclarativeBase):
    """Declarative base for the per-unit embedded store."""


PK_BIGINT = BigInteger().with_variant(Integer, "sqlite")


class DecisionColumns:
    """Columns of the ``decisions`` table common to both schemas."""

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    input_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cot_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decision_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    account_total_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    account_available_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    account_unrealized_profit: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    account_position_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    account_margin_used_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # JSON-encoded lists
    execution_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    candidate_coins: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PositionColumns:
    """Columns of the ``positions`` child table."""

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    decision_id: Mapped[int] = mapped_column(
        PK_BIGINT, ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    side: Mapped[str] = mapped_column(String(16), nullable=False)
    position_amt: Mapped[float] = mapped_column(Float, nullable=False)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    mark_price: Mapped[float] = mapped_column(Float, nullable=False)
    unrealized_profit: Mapped[float] = mapped_column(Float, nullable=False)
    leverage: Mapped[float] = mapped_column(Float, nullable=False)
    liquidation_price: Mapped[float] = mapped_column(Float, nullable=False)


class ActionColumns:
    """Columns of the ``decision_actions`` child table."""

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    decision_id: Mapped[int] = mapped_column(
        PK_BIGINT, ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    leverage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SharedDecisionRow(DecisionColumns, SharedBase):
    __tablename__ = "decisions"
    __table_args__ = (
        UniqueConstraint("trader_id", "cycle_number", name="uq_decisions_trader_cycle"),
        Index("idx_decisions_trader_id", "trader_id"),
        Index("idx_decisions_timestamp", "timestamp"),
        Index("idx_decisions_cycle", "trader_id", "cycle_number"),
        Index("idx_decisions_success", "success"),
    )

    trader_id: Mapped[str] = mapped_column(String(255), nullable=False)

    positions: Mapped[list["SharedPositionRow"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True, order_by="SharedPositionRow.id"
    )
    actions: Mapped[list["SharedActionRow"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True, order_by="SharedActionRow.id"
    )


class SharedPositionRow(PositionColumns, SharedBase):
    __tablename__ = "positions"
    __table_args__ = (Index("idx_positions_decision", "decision_id"),)


class SharedActionRow(ActionColumns, SharedBase):
    __tablename__ = "decision_actions"
    __table_args__ = (
        Index("idx_actions_decision", "decision_id"),
        Index("idx_actions_timestamp", "timestamp"),
    )


class EmbeddedDecisionRow(DecisionColumns, EmbeddedBase):
    __tablename__ = "decisions"
    __table_args__ = (
        UniqueConstraint("cycle_number", name="uq_decisions_cycle"),
        Index("idx_decisions_timestamp", "timestamp"),
        Index("idx_decisions_cycle", "cycle_number"),
        Index("idx_decisions_success", "success"),
    )

    positions: Mapped[list["EmbeddedPositionRow"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True, order_by="EmbeddedPositionRow.id"
    )
    actions: Mapped[list["EmbeddedActionRow"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True, order_by="EmbeddedActionRow.id"
    )


class EmbeddedPositionRow(PositionColumns, EmbeddedBase):
    __tablename__ = "positions"
    __table_args__ = (Index("idx_positions_decision", "decision_id"),)


class EmbeddedActionRow(ActionColumns, EmbeddedBase):
    __tablename__ = "decision_actions"
    __table_args__ = (Index("idx_actions_decision", "decision_id"),)


@dataclass(frozen=True, slots=True)
class LedgerSchema:
    """Bundle of the mapped classes backing one flavour of store."""

    name: str
    base: type[DeclarativeBase]
    decision: type
    position: type
    action: type
    multi_tenant: bool


SHARED_SCHEMA = LedgerSchema(
    name="shared",
    base=SharedBase,
    decision=SharedDecisionRow,
    position=SharedPositionRow,
    action=SharedActionRow,
    multi_tenant=True,
)

EMBEDDED_SCHEMA = LedgerSchema(
    name="embedded",
    base=EmbeddedBase,
    decision=EmbeddedDecisionRow,
    position=EmbeddedPositionRow,
    action=EmbeddedActionRow,
    multi_tenant=False,
)


__all__ = [
    "SharedBase",
    "EmbeddedBase",
    "SharedDecisionRow",
    "SharedPositionRow",
    "SharedActionRow",
    "EmbeddedDecisionRow",
    "EmbeddedPositionRow",
    "EmbeddedActionRow",
    "LedgerSchema",
    "SHARED_SCHEMA",
    "EMBEDDED_SCHEMA",
]
