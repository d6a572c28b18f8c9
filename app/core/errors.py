"""Custom exception hierarchy for the decision core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from schemas.decision import FullDecision


class AppError(Exception):
    """Base error for the application."""


class ConfigurationError(AppError):
    """Raised when configuration is invalid or incomplete."""


class DatabaseError(AppError):
    """Raised for database connectivity or integrity violations."""

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail


class PersistenceError(DatabaseError):
    """Raised when a ledger backend cannot be opened or written."""


class DecisionError(AppError):
    """Base error for decision extraction and validation."""


class ExtractionError(DecisionError):
    """Raised when no decodable decision list exists in a completion."""


class ConsensusError(DecisionError):
    """Raised when several agents produce no usable output to combine."""


class DecisionValidationError(DecisionError):
    """Raised when a parsed decision violates a risk rule.

    ``cot_trace`` keeps the model's reasoning so the failure can be audited
    from logs and ledger records. ``full_decision`` is attached by the
    decision engine once the full cycle output is known.
    """

    def __init__(
        self,
        message: str,
        *,
        index: Optional[int] = None,
        cot_trace: str = "",
        full_decision: Optional["FullDecision"] = None,
    ) -> None:
        super().__init__(message)
        self.index = index
        self.cot_trace = cot_trace
        self.full_decision = full_decision

    def audit_message(self) -> str:
        return f"decision validation failed: {self}\n\n=== AI Chain of Thought Analysis ===\n{self.cot_trace}"


class TraderError(AppError):
    """Raised for unknown or duplicate trading units."""


class TraderFault(AppError):
    """Raised when a trading cycle fails in a way the unit cannot recover from."""

    def __init__(self, message: str, *, trader_id: str, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.trader_id = trader_id
        self.context = context or {}


__all__ = [
    "AppError",
    "ConfigurationError",
    "DatabaseError",
    "PersistenceError",
    "DecisionError",
    "ExtractionError",
    "ConsensusError",
    "DecisionValidationError",
    "TraderError",
    "TraderFault",
]
