"""Reconstruct closed trades from ledger records and aggregate them."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from app.core.logging import get_logger
from schemas.decision import CLOSE_ACTIONS, OPEN_ACTIONS, DecisionAction
from schemas.decision_record import DecisionRecord
from schemas.performance import PerformanceAnalysis, SymbolPerformance, TradeOutcome


LOG = get_logger(__name__)

SENTINEL_RATIO = 999.0
RECENT_TRADES_LIMIT = 10


@dataclass(slots=True)
class OpenLeg:
    side: str
    price: float
    quantity: float
    leverage: int
    timestamp: datetime

    @classmethod
    def from_action(cls, action: DecisionAction) -> "OpenLeg":
        return cls(
            side=action.side or "",
            price=action.price,
            quantity=action.quantity,
            leverage=action.leverage,
            timestamp=action.timestamp,
        )


def position_key(action: DecisionAction) -> Optional[str]:
    side = action.side
    if side is None:
        return None
    return f"{action.symbol}_{side}"


def _replayable(record: DecisionRecord):
    for action in record.decisions:
        if action.success and position_key(action) is not None:
            yield action


def build_outcome(leg: OpenLeg, close: DecisionAction) -> TradeOutcome:
    if leg.side == "long":
        pnl = leg.quantity * (close.price - leg.price)
    else:
        pnl = leg.quantity * (leg.price - close.price)
    position_value = leg.quantity * leg.price
    margin_used = position_value / max(leg.leverage, 1)
    pnl_pct = pnl / margin_used * 100 if margin_used > 0 else 0.0
    return TradeOutcome(
        symbol=close.symbol,
        side=leg.side,
        quantity=leg.quantity,
        leverage=leg.leverage,
        open_price=leg.price,
        close_price=close.price,
        position_value=position_value,
        margin_used=margin_used,
        pnl=pnl,
        pnl_pct=pnl_pct,
        duration=str(close.timestamp - leg.timestamp),
        open_time=leg.timestamp,
        close_time=close.timestamp,
    )


def sharpe_ratio(records: Sequence[DecisionRecord]) -> float:
    """Mean over population standard deviation of per-cycle equity returns.

    Records with a non-positive balance are skipped. A zero deviation yields
    ``+/-999`` following the sign of the mean, or 0.
    """

    equities = [r.account_state.total_balance for r in records if r.account_state.total_balance > 0]
    if len(equities) < 2:
        return 0.0

    returns = [(cur - prev) / prev for prev, cur in zip(equities, equities[1:])]
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / len(returns)
    std_dev = math.sqrt(variance)
    if std_dev == 0:
        if mean > 0:
            return SENTINEL_RATIO
        if mean < 0:
            return -SENTINEL_RATIO
        return 0.0
    return mean / std_dev


class PerformanceAnalyzer:
    """Replays successful open/close actions into ``TradeOutcome`` values.

    ``records`` is the analysis window in ascending cycle order. Opens made
    before the window are recovered from ``widened`` (a larger trailing
    window) and, for closes still unmatched, from ``history`` (every record).
    """

    def __init__(self, recent_limit: int = RECENT_TRADES_LIMIT) -> None:
        self._recent_limit = recent_limit

    @staticmethod
    def _seed_from_widened(
        records: Sequence[DecisionRecord], widened: Optional[Sequence[DecisionRecord]]
    ) -> dict[str, OpenLeg]:
        open_legs: dict[str, OpenLeg] = {}
        if not widened:
            return open_legs
        window_cycles = {r.cycle_number for r in records}
        for record in widened:
            if record.cycle_number in window_cycles:
                continue
            for action in _replayable(record):
                key = position_key(action)
                if action.action in OPEN_ACTIONS:
                    open_legs[key] = OpenLeg.from_action(action)
                elif action.action in CLOSE_ACTIONS:
                    open_legs.pop(key, None)
        return open_legs

    @staticmethod
    def _scan_history(
        key: str, before: DecisionRecord, history: Sequence[DecisionRecord]
    ) -> Optional[OpenLeg]:
        for record in reversed(history):
            if record.cycle_number >= before.cycle_number:
                continue
            for action in reversed(record.decisions):
                if action.success and action.action in OPEN_ACTIONS and position_key(action) == key:
                    return OpenLeg.from_action(action)
        return None

    def _replay(
        self,
        records: Sequence[DecisionRecord],
        widened: Optional[Sequence[DecisionRecord]],
        history: Optional[Sequence[DecisionRecord]],
    ) -> tuple[list[TradeOutcome], int]:
        open_legs = self._seed_from_widened(records, widened)
        trades: list[TradeOutcome] = []
        unmatched = 0

        for record in records:
            for action in _replayable(record):
                key = position_key(action)
                if action.action in OPEN_ACTIONS:
                    open_legs[key] = OpenLeg.from_action(action)
                    continue
                if action.action not in CLOSE_ACTIONS:
                    continue
                leg = open_legs.pop(key, None)
                if leg is None and history:
                    leg = self._scan_history(key, record, history)
                if leg is None:
                    unmatched += 1
                    continue
                trades.append(build_outcome(leg, action))
        return trades, unmatched

    def reconstruct_trades(
        self,
        records: Sequence[DecisionRecord],
        *,
        widened: Optional[Sequence[DecisionRecord]] = None,
        history: Optional[Sequence[DecisionRecord]] = None,
    ) -> list[TradeOutcome]:
        """Closed trades in the window, oldest first."""

        trades, unmatched = self._replay(records, widened, history)
        if unmatched:
            LOG.debug("Closes without a matching open", unmatched=unmatched)
        return trades

    def has_unmatched_closes(
        self,
        records: Sequence[DecisionRecord],
        *,
        widened: Optional[Sequence[DecisionRecord]] = None,
    ) -> bool:
        """True when some close in the window cannot be paired without full history."""

        _, unmatched = self._replay(records, widened, None)
        return unmatched > 0

    def analyze(
        self,
        records: Sequence[DecisionRecord],
        *,
        widened: Optional[Sequence[DecisionRecord]] = None,
        history: Optional[Sequence[DecisionRecord]] = None,
    ) -> PerformanceAnalysis:
        if not records:
            return PerformanceAnalysis()

        trades = self.reconstruct_trades(records, widened=widened, history=history)
        wins = [t.pnl for t in trades if t.pnl > 0]
        losses = [t.pnl for t in trades if t.pnl < 0]
        gross_win = sum(wins)
        gross_loss = sum(losses)

        if gross_loss != 0:
            profit_factor = gross_win / -gross_loss
        elif gross_win > 0:
            profit_factor = SENTINEL_RATIO
        else:
            profit_factor = 0.0

        symbol_stats = self._symbol_stats(trades)
        best = max(symbol_stats.values(), key=lambda s: s.total_pnl, default=None)
        worst = min(symbol_stats.values(), key=lambda s: s.total_pnl, default=None)

        return PerformanceAnalysis(
            total_trades=len(trades),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / len(trades) * 100 if trades else 0.0,
            avg_win=gross_win / len(wins) if wins else 0.0,
            avg_loss=gross_loss / len(losses) if losses else 0.0,
            profit_factor=profit_factor,
            sharpe_ratio=sharpe_ratio(records),
            recent_trades=list(reversed(trades))[: self._recent_limit],
            symbol_stats=symbol_stats,
            best_symbol=best.symbol if best else None,
            worst_symbol=worst.symbol if worst else None,
        )

    @staticmethod
    def _symbol_stats(trades: Sequence[TradeOutcome]) -> dict[str, SymbolPerformance]:
        grouped: dict[str, list[TradeOutcome]] = {}
        for trade in trades:
            grouped.setdefault(trade.symbol, []).append(trade)

        stats: dict[str, SymbolPerformance] = {}
        for symbol, items in grouped.items():
            total_pnl = sum(t.pnl for t in items)
            winning = sum(1 for t in items if t.pnl > 0)
            stats[symbol] = SymbolPerformance(
                symbol=symbol,
                total_trades=len(items),
                winning_trades=winning,
                losing_trades=sum(1 for t in items if t.pnl < 0),
                win_rate=winning / len(items) * 100,
                total_pnl=total_pnl,
                avg_pnl=total_pnl / len(items),
            )
        return stats


__all__ = ["OpenLeg", "PerformanceAnalyzer", "build_outcome", "position_key", "sharpe_ratio"]
