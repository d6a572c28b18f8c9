"""Hard risk rules applied to parsed decisions before execution.

Validation is all-or-nothing: the first failing decision aborts the whole set
and nothing from it may be executed. Only genuinely parsed decisions are
validated; synthesized fallback decisions bypass this module.

The risk:reward check prices the trade from an approximate entry placed 20%
of the way from the stop toward the take-profit. This is not the fill price.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from app.core.config import Settings
from app.core.errors import DecisionValidationError
from schemas.decision import VALID_ACTIONS, Decision

MAJOR_SYMBOLS: frozenset[str] = frozenset({"BTCUSDT", "ETHUSDT"})

ENTRY_OFFSET_FRACTION = 0.2
SIZE_TOLERANCE = 1.01
MAX_RISK_PER_TRADE_FRACTION = 0.02


def is_major(symbol: str) -> bool:
    return symbol in MAJOR_SYMBOLS


@dataclass(frozen=True, slots=True)
class RiskLimits:
    """Account-dependent bounds a decision set is validated against.

    ``price_lookup`` is optional; when supplied, opens must also keep their
    stop-loss dollar risk within 2% of equity at the current price.
    """

    account_equity: float
    btc_eth_leverage: int = 5
    altcoin_leverage: int = 5
    major_margin_multiple: float = 0.50
    altcoin_margin_multiple: float = 0.40
    min_risk_reward_ratio: float = 3.0
    price_lookup: Optional[Callable[[str], float]] = None

    @classmethod
    def from_settings(
        cls,
        account_equity: float,
        settings: Settings,
        *,
        btc_eth_leverage: Optional[int] = None,
        altcoin_leverage: Optional[int] = None,
        price_lookup: Optional[Callable[[str], float]] = None,
    ) -> "RiskLimits":
        return cls(
            account_equity=account_equity,
            btc_eth_leverage=btc_eth_leverage or settings.btc_eth_leverage,
            altcoin_leverage=altcoin_leverage or settings.altcoin_leverage,
            major_margin_multiple=settings.major_margin_multiple,
            altcoin_margin_multiple=settings.altcoin_margin_multiple,
            min_risk_reward_ratio=settings.min_risk_reward_ratio,
            price_lookup=price_lookup,
        )

    def max_leverage(self, symbol: str) -> int:
        return self.btc_eth_leverage if is_major(symbol) else self.altcoin_leverage

    def max_margin(self, symbol: str) -> float:
        multiple = self.major_margin_multiple if is_major(symbol) else self.altcoin_margin_multiple
        return self.account_equity * multiple

    def min_margin(self, symbol: str) -> float:
        if is_major(symbol):
            return max(15.0, self.account_equity * 0.20)
        return max(13.0, self.account_equity * 0.15)


@dataclass(frozen=True, slots=True)
class RiskReward:
    entry_price: float
    risk_pct: float
    reward_pct: float
    ratio: float


def implied_risk_reward(action: str, stop_loss: float, take_profit: float) -> RiskReward:
    """Risk and reward percentages from the approximate entry price."""

    if action == "open_long":
        entry = stop_loss + (take_profit - stop_loss) * ENTRY_OFFSET_FRACTION
        risk_pct = (entry - stop_loss) / entry * 100
        reward_pct = (take_profit - entry) / entry * 100
    else:
        entry = stop_loss - (stop_loss - take_profit) * ENTRY_OFFSET_FRACTION
        risk_pct = (stop_loss - entry) / entry * 100
        reward_pct = (entry - take_profit) / entry * 100
    ratio = reward_pct / risk_pct if risk_pct > 0 else 0.0
    return RiskReward(entry_price=entry, risk_pct=risk_pct, reward_pct=reward_pct, ratio=ratio)


def _fail(message: str) -> DecisionValidationError:
    return DecisionValidationError(message)


def _check_price_risk(decision: Decision, limits: RiskLimits, price_lookup: Callable[[str], float]) -> None:
    price = price_lookup(decision.symbol)
    if not price or price <= 0 or math.isnan(price):
        raise _fail(f"invalid market price for {decision.symbol}")

    if decision.action == "open_long":
        risk_per_unit = price - decision.stop_loss
    else:
        risk_per_unit = decision.stop_loss - price
    if risk_per_unit <= 0:
        raise _fail(
            f"stop loss {decision.stop_loss:.4f} must be on the correct side of current price {price:.4f}"
        )

    max_risk_usd = limits.account_equity * MAX_RISK_PER_TRADE_FRACTION
    if max_risk_usd <= 0:
        raise _fail(f"invalid account equity {limits.account_equity:.2f} for risk calculation")

    allowed_margin = max_risk_usd * price / risk_per_unit / decision.leverage
    min_margin = limits.min_margin(decision.symbol)
    if allowed_margin < min_margin:
        raise _fail(
            f"risk cap {max_risk_usd:.2f} USDT + stop {decision.stop_loss:.4f} allow max "
            f"{allowed_margin:.2f} USDT margin (min required {min_margin:.2f}) - tighten stop or reduce leverage"
        )


def validate_decision(decision: Decision, limits: RiskLimits) -> None:
    """Check one decision against the risk rules.

    Raises:
        DecisionValidationError: describing the first violated rule.
    """

    if decision.action not in VALID_ACTIONS:
        raise _fail(f"invalid action: {decision.action}")

    if not decision.is_open:
        return

    max_leverage = limits.max_leverage(decision.symbol)
    if decision.leverage <= 0 or decision.leverage > max_leverage:
        raise _fail(
            f"leverage must be between 1-{max_leverage} ({decision.symbol}, current config limit "
            f"{max_leverage}x): {decision.leverage}"
        )

    if decision.position_size_usd <= 0:
        raise _fail(f"position margin must be greater than 0: {decision.position_size_usd:.2f}")

    max_margin = limits.max_margin(decision.symbol)
    if decision.position_size_usd > max_margin * SIZE_TOLERANCE:
        label = "BTC/ETH" if is_major(decision.symbol) else "altcoin"
        multiple = limits.major_margin_multiple if is_major(decision.symbol) else limits.altcoin_margin_multiple
        raise _fail(
            f"{label} position margin cannot exceed {max_margin:.0f} USDT ({multiple * 100:.0f}% of equity), "
            f"actual: {decision.position_size_usd:.0f}"
        )

    if decision.stop_loss <= 0 or decision.take_profit <= 0:
        raise _fail("stop loss and take profit must be greater than 0")

    if decision.action == "open_long" and decision.stop_loss >= decision.take_profit:
        raise _fail("for long positions, stop loss must be less than take profit")
    if decision.action == "open_short" and decision.stop_loss <= decision.take_profit:
        raise _fail("for short positions, stop loss must be greater than take profit")

    rr = implied_risk_reward(decision.action, decision.stop_loss, decision.take_profit)
    if rr.ratio < limits.min_risk_reward_ratio:
        raise _fail(
            f"risk-reward ratio too low ({rr.ratio:.2f}:1), must be ≥{limits.min_risk_reward_ratio:.1f}:1 "
            f"[risk:{rr.risk_pct:.2f}% reward:{rr.reward_pct:.2f}%] "
            f"[stop loss:{decision.stop_loss:.2f} take profit:{decision.take_profit:.2f}]"
        )

    if limits.price_lookup is not None:
        _check_price_risk(decision, limits, limits.price_lookup)


def validate_decisions(decisions: Sequence[Decision], limits: RiskLimits, *, cot_trace: str = "") -> None:
    """Validate a decision set atomically; the first failure aborts the set.

    Raises:
        DecisionValidationError: carrying the 1-based index and the reasoning trace.
    """

    for idx, decision in enumerate(decisions, start=1):
        try:
            validate_decision(decision, limits)
        except DecisionValidationError as exc:
            raise DecisionValidationError(
                f"decision #{idx} validation failed: {exc}", index=idx, cot_trace=cot_trace
            ) from exc


__all__ = [
    "MAJOR_SYMBOLS",
    "RiskLimits",
    "RiskReward",
    "implied_risk_reward",
    "is_major",
    "validate_decision",
    "validate_decisions",
]
