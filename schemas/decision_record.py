"""Per-cycle ledger record and the point-in-time snapshots it carries."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from .decision import DecisionAction


class AccountSnapshot(BaseModel):
    """Account state copied at the moment a cycle was recorded."""

    model_config = {"extra": "forbid", "frozen": True}

    total_balance: float = 0.0
    available_balance: float = 0.0
    total_unrealized_profit: float = 0.0
    position_count: int = 0
    margin_used_pct: float = 0.0


class PositionSnapshot(BaseModel):
    """Open position copied at the moment a cycle was recorded."""

    model_config = {"extra": "forbid", "frozen": True}

    symbol: str
    side: str
    position_amt: float = 0.0
    entry_price: float = 0.0
    mark_price: float = 0.0
    unrealized_profit: float = 0.0
    leverage: float = 0.0
    liquidation_price: float = 0.0


class DecisionRecord(BaseModel):
    """One row of the ledger: the full audit trail of a single cycle.

    ``raw_response`` and ``execution_log`` are only retained for failed
    cycles; the ledger clears them before persisting successful ones.
    """

    model_config = {"extra": "forbid"}

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cycle_number: int = Field(0, ge=0, description="Monotonic per trading unit; 0 is the seed row.")
    input_prompt: str = ""
    cot_trace: str = ""
    decision_json: str = ""
    raw_response: str = ""
    account_state: AccountSnapshot = Field(default_factory=AccountSnapshot)
    positions: list[PositionSnapshot] = Field(default_factory=list)
    candidate_coins: list[str] = Field(default_factory=list)
    decisions: list[DecisionAction] = Field(default_factory=list)
    execution_log: list[str] = Field(default_factory=list)
    success: bool = True
    error_message: str = ""

    @property
    def is_seed(self) -> bool:
        return self.cycle_number == 0


__all__ = ["AccountSnapshot", "PositionSnapshot", "DecisionRecord"]
