"""Tests for the hard risk rules applied to parsed decisions."""

from __future__ import annotations

import pytest

from app.core.errors import DecisionValidationError
from app.decision.validator import RiskLimits, implied_risk_reward, validate_decision, validate_decisions
from schemas.decision import Decision


LIMITS = RiskLimits(account_equity=10_000.0, btc_eth_leverage=5, altcoin_leverage=3)


def _open(**overrides) -> Decision:
    fields = {
        "symbol": "BTCUSDT",
        "action": "open_long",
        "leverage": 5,
        "position_size_usd": 1000,
        "stop_loss": 100,
        "take_profit": 130,
    }
    fields.update(overrides)
    return Decision(**fields)


def test_valid_long_passes() -> None:
    validate_decision(_open(), LIMITS)


def test_valid_short_passes() -> None:
    validate_decision(_open(action="open_short", stop_loss=130, take_profit=100), LIMITS)


@pytest.mark.parametrize("action", ["close_long", "close_short", "hold", "wait"])
def test_non_open_actions_need_no_sizing(action: str) -> None:
    validate_decision(Decision(symbol="ETHUSDT", action=action), LIMITS)


def test_unknown_action_is_rejected() -> None:
    with pytest.raises(DecisionValidationError, match="invalid action: buy_the_dip"):
        validate_decision(Decision(symbol="BTCUSDT", action="buy_the_dip"), LIMITS)


def test_leverage_bound_depends_on_symbol_class() -> None:
    validate_decision(_open(leverage=5), LIMITS)
    with pytest.raises(DecisionValidationError, match=r"leverage must be between 1-3"):
        validate_decision(_open(symbol="SOLUSDT", leverage=5, position_size_usd=500), LIMITS)
    with pytest.raises(DecisionValidationError, match="leverage"):
        validate_decision(_open(leverage=0), LIMITS)


def test_position_size_caps() -> None:
    with pytest.raises(DecisionValidationError, match="greater than 0"):
        validate_decision(_open(position_size_usd=0), LIMITS)

    validate_decision(_open(position_size_usd=5000), LIMITS)
    validate_decision(_open(symbol="SOLUSDT", leverage=3, position_size_usd=4030), LIMITS)
    with pytest.raises(DecisionValidationError, match=r"BTC/ETH position margin cannot exceed 5000 USDT \(50% of equity\)"):
        validate_decision(_open(position_size_usd=5100), LIMITS)
    with pytest.raises(DecisionValidationError, match=r"altcoin position margin cannot exceed 4000 USDT \(40% of equity\)"):
        validate_decision(_open(symbol="SOLUSDT", leverage=3, position_size_usd=4100), LIMITS)


def test_stop_and_target_must_be_positive_and_ordered() -> None:
    with pytest.raises(DecisionValidationError, match="must be greater than 0"):
        validate_decision(_open(stop_loss=0), LIMITS)
    with pytest.raises(DecisionValidationError, match="for long positions, stop loss must be less than take profit"):
        validate_decision(_open(stop_loss=100, take_profit=90), LIMITS)
    with pytest.raises(DecisionValidationError, match="for short positions, stop loss must be greater than take profit"):
        validate_decision(_open(action="open_short", stop_loss=90, take_profit=100), LIMITS)


def test_implied_risk_reward_uses_twenty_percent_entry() -> None:
    long_rr = implied_risk_reward("open_long", 100, 130)
    assert long_rr.entry_price == pytest.approx(106.0)
    assert long_rr.ratio == pytest.approx(4.0)

    short_rr = implied_risk_reward("open_short", 130, 100)
    assert short_rr.entry_price == pytest.approx(124.0)
    assert short_rr.ratio == pytest.approx(4.0)


def test_minimum_risk_reward_is_enforced() -> None:
    strict = RiskLimits(account_equity=10_000.0, min_risk_reward_ratio=5.0)
    with pytest.raises(DecisionValidationError, match=r"risk-reward ratio too low \(4.00:1\)"):
        validate_decision(_open(), strict)


def test_price_lookup_caps_dollar_risk() -> None:
    prices = {"BTCUSDT": 100.0}
    limits = RiskLimits(account_equity=10_000.0, price_lookup=prices.__getitem__)

    validate_decision(_open(stop_loss=99.9, take_profit=100.5), limits)

    with pytest.raises(DecisionValidationError, match="risk cap"):
        validate_decision(_open(stop_loss=90, take_profit=140), limits)

    prices["BTCUSDT"] = 99.0
    with pytest.raises(DecisionValidationError, match="correct side of current price"):
        validate_decision(_open(stop_loss=99.9, take_profit=100.5), limits)


def test_decision_set_fails_atomically_with_index_and_trace() -> None:
    decisions = [
        Decision(symbol="ETHUSDT", action="close_long"),
        _open(stop_loss=100, take_profit=90),
        _open(),
    ]

    with pytest.raises(DecisionValidationError) as excinfo:
        validate_decisions(decisions, LIMITS, cot_trace="thinking")

    err = excinfo.value
    assert err.index == 2
    assert str(err).startswith("decision #2 validation failed:")
    assert err.cot_trace == "thinking"
    assert err.audit_message().endswith("=== AI Chain of Thought Analysis ===\nthinking")
