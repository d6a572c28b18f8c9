"""Schemas package for typed models used across the system."""

from .decision import Decision, DecisionAction, ExecutionResult, FullDecision
from .decision_record import AccountSnapshot, DecisionRecord, PositionSnapshot
from .performance import PerformanceAnalysis, Statistics, SymbolPerformance, TradeOutcome
from .supervisor import ComparisonData, TraderComparison, TraderStatus
from .trading_context import AccountInfo, CandidateCoin, PositionInfo, TradingContext

__all__ = [
    "Decision",
    "DecisionAction",
    "ExecutionResult",
    "FullDecision",
    "AccountSnapshot",
    "DecisionRecord",
    "PositionSnapshot",
    "PerformanceAnalysis",
    "Statistics",
    "SymbolPerformance",
    "TradeOutcome",
    "AccountInfo",
    "CandidateCoin",
    "PositionInfo",
    "TradingContext",
    "ComparisonData",
    "TraderComparison",
    "TraderStatus",
]
