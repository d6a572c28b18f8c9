"""Tests for turning completions into decision sets."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from app.core.config import Settings
from app.core.errors import DecisionValidationError
from app.decision.engine import (
    DEFAULT_FALLBACK_REASONING,
    EMPTY_FALLBACK_REASONING,
    DecisionEngine,
    fallback_reasoning,
    parse_full_decision,
    sort_by_priority,
)
from app.decision.validator import RiskLimits
from schemas.decision import Decision
from schemas.trading_context import AccountInfo, TradingContext


LIMITS = RiskLimits(account_equity=10_000.0)
VALID = (
    "Trend is up.\n"
    '[{"symbol": "BTCUSDT", "action": "open_long", "leverage": 3, "position_size_usd": 800,'
    ' "stop_loss": 100, "take_profit": 130, "confidence": 70, "reasoning": "breakout"}]'
)


def _context() -> TradingContext:
    return TradingContext(current_time=datetime.now(timezone.utc), account=AccountInfo(total_equity=10_000.0))


def _settings(**env: object) -> Settings:
    return Settings(LEDGER_DB_DSN="", **env)


def test_no_array_yields_single_wait_decision() -> None:
    result = parse_full_decision("Volatility is extreme.\nStaying flat this round.", LIMITS)

    assert result.fallback
    assert len(result.decisions) == 1
    decision = result.decisions[0]
    assert (decision.symbol, decision.action) == ("ALL", "wait")
    assert decision.reasoning == "Volatility is extreme."
    assert result.cot_trace == "Volatility is extreme.\nStaying flat this round."


def test_empty_array_yields_safety_wait() -> None:
    result = parse_full_decision("Nothing to do.\n[]", LIMITS)

    assert result.fallback
    assert result.decisions[0].reasoning == EMPTY_FALLBACK_REASONING


def test_fallback_reasoning_shapes() -> None:
    assert fallback_reasoning("") == DEFAULT_FALLBACK_REASONING
    assert fallback_reasoning("short line\nmore") == "short line"
    long_text = "x" * 250
    assert fallback_reasoning(long_text) == "x" * 200 + "..."
    assert fallback_reasoning("  tidy  ") == "tidy"


def test_valid_completion_is_parsed_and_kept() -> None:
    result = parse_full_decision(VALID, LIMITS)

    assert not result.fallback
    assert result.cot_trace == "Trend is up."
    assert result.raw_response == VALID
    assert result.decisions[0].reasoning == "breakout"
    assert '"symbol": "BTCUSDT"' in result.decision_json()


def test_validation_failure_carries_parsed_output() -> None:
    raw = 'Going long.\n[{"symbol": "BTCUSDT", "action": "open_long", "leverage": 5, "position_size_usd": 1000, "stop_loss": 100, "take_profit": 90}]'

    with pytest.raises(DecisionValidationError) as excinfo:
        parse_full_decision(raw, LIMITS)

    err = excinfo.value
    assert err.full_decision is not None
    assert err.full_decision.raw_response == raw
    assert err.cot_trace == "Going long."
    assert "stop loss must be less than take profit" in str(err)


def test_sort_by_priority_is_stable() -> None:
    decisions = [
        Decision(symbol="A", action="wait"),
        Decision(symbol="B", action="open_long"),
        Decision(symbol="C", action="mystery"),
        Decision(symbol="D", action="close_short"),
        Decision(symbol="E", action="open_short"),
        Decision(symbol="F", action="close_long"),
    ]

    assert [d.symbol for d in sort_by_priority(decisions)] == ["D", "F", "B", "E", "A", "C"]


@pytest.mark.asyncio
async def test_decide_sets_prompt_and_timestamp() -> None:
    seen: list[tuple[str, str]] = []

    async def _complete(system_prompt: str, user_prompt: str) -> str:
        seen.append((system_prompt, user_prompt))
        return VALID

    engine = DecisionEngine(_settings())
    result = await engine.decide(_context(), _complete, system_prompt="sys", user_prompt="user")

    assert seen == [("sys", "user")]
    assert result.user_prompt == "user"
    assert result.decisions[0].action == "open_long"


@pytest.mark.asyncio
async def test_transport_failure_falls_back_to_wait() -> None:
    async def _broken(system_prompt: str, user_prompt: str) -> str:
        raise ConnectionError("connection reset")

    result = await DecisionEngine(_settings()).decide(_context(), _broken, user_prompt="user")

    assert result.fallback
    assert result.cot_trace == "AI API call failed: connection reset"
    assert result.decisions[0].reasoning == "AI API unavailable: connection reset - waiting for next cycle"
    assert result.user_prompt == "user"


@pytest.mark.asyncio
async def test_slow_completion_times_out_to_wait() -> None:
    async def _slow(system_prompt: str, user_prompt: str) -> str:
        await asyncio.sleep(5)
        return VALID

    engine = DecisionEngine(_settings(AI_CALL_TIMEOUT_SECONDS=0.05))
    result = await engine.decide(_context(), _slow)

    assert result.fallback
    assert result.decisions[0].action == "wait"
    assert "timed out" in result.cot_trace


@pytest.mark.asyncio
async def test_decide_uses_context_leverage_limits() -> None:
    async def _complete(system_prompt: str, user_prompt: str) -> str:
        return VALID

    context = _context().model_copy(update={"btc_eth_leverage": 2})

    with pytest.raises(DecisionValidationError, match="leverage must be between 1-2"):
        await DecisionEngine(_settings()).decide(context, _complete, user_prompt="user")
