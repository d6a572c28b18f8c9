"""Read models describing trading units for dashboards and comparison views."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class TraderStatus(BaseModel):
    model_config = {"extra": "forbid"}

    trader_id: str
    trader_name: str
    ai_model: str
    is_running: bool
    start_time: datetime
    runtime_minutes: int
    call_count: int
    cycle_number: int
    initial_balance: float
    scan_interval_seconds: float
    ledger_backend: str
    restarts: int = 0


class TraderComparison(BaseModel):
    """One unit's row in the side-by-side comparison.

    ``demo`` marks rows whose account lookup failed and that report the
    initial balance instead of live equity.
    """

    model_config = {"extra": "forbid"}

    trader_id: str
    trader_name: str
    ai_model: str
    total_equity: float
    total_pnl: float
    total_pnl_pct: float
    position_count: int
    margin_used_pct: float
    call_count: int
    is_running: bool
    demo: bool = False


class ComparisonData(BaseModel):
    model_config = {"extra": "forbid"}

    traders: list[TraderComparison] = Field(default_factory=list)
    count: int = 0
    shared_account: bool = False


__all__ = ["TraderStatus", "TraderComparison", "ComparisonData"]
