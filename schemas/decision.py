"""Decision schemas exchanged between the parser, execution and the ledger.

``Decision`` is what the model proposes, ``DecisionAction`` is what execution
actually attempted. ``FullDecision`` bundles one cycle's parser output with
the reasoning trace that justifies it.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator

VALID_ACTIONS: frozenset[str] = frozenset(
    {"open_long", "open_short", "close_long", "close_short", "hold", "wait"}
)
OPEN_ACTIONS: frozenset[str] = frozenset({"open_long", "open_short"})
CLOSE_ACTIONS: frozenset[str] = frozenset({"close_long", "close_short"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Decision(BaseModel):
    """One proposed trade instruction as produced by the model.

    ``action`` is kept as a plain string so that unknown actions survive
    decoding and are rejected by risk validation with a readable error.
    """

    model_config = {"extra": "ignore"}

    symbol: str = Field("", description="Instrument symbol, or 'ALL' for account-wide no-ops.")
    action: str = Field("", description="One of open_long, open_short, close_long, close_short, hold, wait.")
    leverage: int = Field(0, description="Requested leverage for opens.")
    position_size_usd: float = Field(0.0, description="USD position size for opens.")
    stop_loss: float = Field(0.0, description="Stop-loss price for opens.")
    take_profit: float = Field(0.0, description="Take-profit price for opens.")
    confidence: int = Field(0, description="Model confidence, 0-100.")
    risk_usd: float = Field(0.0, description="Maximum USD risk the model accepts.")
    reasoning: str = Field("", description="Free-text justification.")

    @field_validator(
        "leverage", "position_size_usd", "stop_loss", "take_profit", "confidence", "risk_usd", "reasoning",
        mode="before",
    )
    @classmethod
    def _null_as_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return "" if info.field_name == "reasoning" else 0
        return value

    @property
    def is_open(self) -> bool:
        return self.action in OPEN_ACTIONS

    @property
    def is_close(self) -> bool:
        return self.action in CLOSE_ACTIONS


class DecisionAction(BaseModel):
    """The executed form of a decision, appended to a cycle's record."""

    model_config = {"extra": "forbid"}

    action: str
    symbol: str
    quantity: float = 0.0
    leverage: int = 0
    price: float = 0.0
    order_id: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)
    success: bool = False
    error: str = ""

    @property
    def side(self) -> Optional[str]:
        """Position side touched by the action, ``None`` for no-ops."""
        if self.action in ("open_long", "close_long"):
            return "long"
        if self.action in ("open_short", "close_short"):
            return "short"
        return None


class ExecutionResult(BaseModel):
    """Outcome reported by the execution collaborator for one decision."""

    model_config = {"extra": "forbid"}

    success: bool
    price: float = 0.0
    quantity: float = 0.0
    order_id: int = 0
    error: str = ""


class FullDecision(BaseModel):
    """Everything one decision cycle produced before execution."""

    model_config = {"extra": "forbid"}

    user_prompt: str = ""
    cot_trace: str = ""
    decisions: list[Decision] = Field(default_factory=list)
    raw_response: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    fallback: bool = Field(False, description="True when decisions were synthesized instead of parsed.")

    def decision_json(self) -> str:
        """Canonical JSON encoding of the decision list, as persisted."""
        return json.dumps([d.model_dump() for d in self.decisions], indent=2, ensure_ascii=False)


__all__ = [
    "VALID_ACTIONS",
    "OPEN_ACTIONS",
    "CLOSE_ACTIONS",
    "Decision",
    "DecisionAction",
    "ExecutionResult",
    "FullDecision",
]
