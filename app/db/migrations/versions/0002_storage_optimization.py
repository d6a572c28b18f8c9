"""Drop debug payloads from successful cycles and extend text storage on Postgres."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_storage_optimization"
down_revision = "0001_decision_ledger"
branch_labels = None
depends_on = None

TEXT_COLUMNS = ("input_prompt", "cot_trace", "raw_response", "decision_json")


def upgrade() -> None:
    decisions = sa.table(
        "decisions",
        sa.column("success", sa.Boolean()),
        sa.column("raw_response", sa.Text()),
        sa.column("execution_log", sa.Text()),
    )
    op.execute(
        decisions.update()
        .where(decisions.c.success == sa.true())
        .values(raw_response=None, execution_log=None)
    )

    if op.get_bind().dialect.name == "postgresql":
        for column in TEXT_COLUMNS:
            op.execute(f"ALTER TABLE decisions ALTER COLUMN {column} SET STORAGE EXTENDED")


def downgrade() -> None:
    # Cleared payloads cannot be restored.
    pass
