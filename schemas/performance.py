"""Read models computed on demand from the ledger's decision records."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TradeOutcome(BaseModel):
    """A reconstructed open/close pair. Never persisted."""

    model_config = {"extra": "forbid", "frozen": True}

    symbol: str
    side: str
    quantity: float
    leverage: int
    open_price: float
    close_price: float
    position_value: float
    margin_used: float
    pnl: float
    pnl_pct: float
    duration: str
    open_time: datetime
    close_time: datetime
    was_stop_loss: bool = False


class SymbolPerformance(BaseModel):
    model_config = {"extra": "forbid"}

    symbol: str
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0


class PerformanceAnalysis(BaseModel):
    """Aggregate trading performance over a window of cycles.

    Frozen so it can be handed to prompt builders as a read-only value.
    """

    model_config = {"extra": "forbid", "frozen": True}

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    recent_trades: list[TradeOutcome] = Field(default_factory=list, description="Newest first, at most 10.")
    symbol_stats: dict[str, SymbolPerformance] = Field(default_factory=dict)
    best_symbol: Optional[str] = None
    worst_symbol: Optional[str] = None


class Statistics(BaseModel):
    model_config = {"extra": "forbid"}

    total_cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    total_open_positions: int = 0
    total_close_positions: int = 0


__all__ = ["TradeOutcome", "SymbolPerformance", "PerformanceAnalysis", "Statistics"]
