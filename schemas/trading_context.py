"""Context handed to the decision engine each cycle.

Built by external collaborators (market data, exchange adapters). The core
only reads it: the account snapshot sizes risk checks, the positions and
candidates are copied into the ledger record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .performance import PerformanceAnalysis


class AccountInfo(BaseModel):
    model_config = {"extra": "forbid"}

    total_equity: float = 0.0
    wallet_balance: float = 0.0
    available_balance: float = 0.0
    total_pnl: float = 0.0
    total_pnl_pct: float = 0.0
    margin_used: float = 0.0
    margin_used_pct: float = 0.0
    position_count: int = 0


class PositionInfo(BaseModel):
    model_config = {"extra": "forbid"}

    symbol: str
    side: str
    entry_price: float = 0.0
    mark_price: float = 0.0
    quantity: float = 0.0
    leverage: int = 1
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    liquidation_price: float = 0.0
    margin_used: float = 0.0


class CandidateCoin(BaseModel):
    model_config = {"extra": "forbid"}

    symbol: str
    sources: list[str] = Field(default_factory=list, description="Screeners that surfaced the symbol.")


class TradingContext(BaseModel):
    """Everything the decision engine and the ledger need about the current cycle."""

    model_config = {"extra": "forbid"}

    current_time: datetime
    runtime_minutes: int = 0
    call_count: int = 0
    account: AccountInfo = Field(default_factory=AccountInfo)
    positions: list[PositionInfo] = Field(default_factory=list)
    candidate_coins: list[CandidateCoin] = Field(default_factory=list)
    performance: Optional[PerformanceAnalysis] = Field(
        None, description="Prior performance, read-only; prompt builders use sharpe_ratio."
    )
    btc_eth_leverage: int = 5
    altcoin_leverage: int = 5


__all__ = ["AccountInfo", "PositionInfo", "CandidateCoin", "TradingContext"]
