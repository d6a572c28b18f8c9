"""Shared decision ledger schema."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_decision_ledger"
down_revision = None
branch_labels = None
depends_on = None

PK_BIGINT = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "decisions",
        sa.Column("id", PK_BIGINT, primary_key=True, autoincrement=True),
        sa.Column("trader_id", sa.String(length=255), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("input_prompt", sa.Text()),
        sa.Column("cot_trace", sa.Text()),
        sa.Column("decision_json", sa.Text()),
        sa.Column("raw_response", sa.Text()),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text()),
        sa.Column("account_total_balance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("account_available_balance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("account_unrealized_profit", sa.Float(), nullable=False, server_default="0"),
        sa.Column("account_position_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("account_margin_used_pct", sa.Float(), nullable=False, server_default="0"),
        sa.Column("execution_log", sa.Text()),
        sa.Column("candidate_coins", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("trader_id", "cycle_number", name="uq_decisions_trader_cycle"),
    )
    op.create_index("idx_decisions_trader_id", "decisions", ["trader_id"])
    op.create_index("idx_decisions_timestamp", "decisions", ["timestamp"])
    op.create_index("idx_decisions_cycle", "decisions", ["trader_id", "cycle_number"])
    op.create_index("idx_decisions_success", "decisions", ["success"])

    op.create_table(
        "positions",
        sa.Column("id", PK_BIGINT, primary_key=True, autoincrement=True),
        sa.Column("decision_id", PK_BIGINT, sa.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("symbol", sa.String(length=64), nullable=False),
        sa.Column("side", sa.String(length=16), nullable=False),
        sa.Column("position_amt", sa.Float(), nullable=False),
        sa.Column("entry_price", sa.Float(), nullable=False),
        sa.Column("mark_price", sa.Float(), nullable=False),
        sa.Column("unrealized_profit", sa.Float(), nullable=False),
        sa.Column("leverage", sa.Float(), nullable=False),
        sa.Column("liquidation_price", sa.Float(), nullable=False),
    )
    op.create_index("idx_positions_decision", "positions", ["decision_id"])

    op.create_table(
        "decision_actions",
        sa.Column("id", PK_BIGINT, primary_key=True, autoincrement=True),
        sa.Column("decision_id", PK_BIGINT, sa.ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("symbol", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("leverage", sa.Integer()),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("order_id", sa.BigInteger()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error", sa.Text()),
    )
    op.create_index("idx_actions_decision", "decision_actions", ["decision_id"])
    op.create_index("idx_actions_timestamp", "decision_actions", ["timestamp"])


def downgrade() -> None:
    op.drop_index("idx_actions_timestamp", table_name="decision_actions")
    op.drop_index("idx_actions_decision", table_name="decision_actions")
    op.drop_table("decision_actions")
    op.drop_index("idx_positions_decision", table_name="positions")
    op.drop_table("positions")
    op.drop_index("idx_decisions_success", table_name="decisions")
    op.drop_index("idx_decisions_cycle", table_name="decisions")
    op.drop_index("idx_decisions_timestamp", table_name="decisions")
    op.drop_index("idx_decisions_trader_id", table_name="decisions")
    op.drop_table("decisions")
