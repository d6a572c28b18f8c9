"""Turns one model completion into a validated decision set.

The engine never lets a parsing or transport problem stop a trading cycle:
whenever no genuine decision can be obtained it synthesizes a single
``wait`` decision for ``ALL`` symbols. The only error it raises is
``DecisionValidationError``, when decisions were parsed but break a risk rule.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

from app.core.config import Settings, get_settings
from app.core.errors import DecisionValidationError, ExtractionError
from app.core.logging import get_logger
from app.decision.extraction import extract_cot_trace, extract_decisions
from app.decision.validator import RiskLimits, validate_decisions
from schemas.decision import VALID_ACTIONS, Decision, FullDecision
from schemas.trading_context import TradingContext


LOG = get_logger(__name__)

CompletionFn = Callable[[str, str], Awaitable[str]]

FALLBACK_SYMBOL = "ALL"
DEFAULT_FALLBACK_REASONING = "No trades - awaiting better opportunities"
EMPTY_FALLBACK_REASONING = "Safety fallback - no decisions extracted"
TRACE_PREFIX_CHARS = 1000
REASONING_CHARS = 200


def wait_decision(reasoning: str) -> Decision:
    return Decision(symbol=FALLBACK_SYMBOL, action="wait", reasoning=reasoning)


def fallback_reasoning(cot_trace: str) -> str:
    """First line of the trace when short, else its first 200 characters."""

    if not cot_trace:
        return DEFAULT_FALLBACK_REASONING
    line_end = cot_trace.find("\n")
    if 0 < line_end < REASONING_CHARS:
        return cot_trace[:line_end].strip()
    if len(cot_trace) > REASONING_CHARS:
        return cot_trace[:REASONING_CHARS].strip() + "..."
    return cot_trace.strip()


def _trace_or_prefix(raw: str) -> str:
    trace = extract_cot_trace(raw)
    if trace or not raw:
        return trace
    return raw[:TRACE_PREFIX_CHARS] + "..." if len(raw) > TRACE_PREFIX_CHARS else raw


def parse_full_decision(raw: str, limits: RiskLimits) -> FullDecision:
    """Parse, repair and validate a raw completion.

    Raises:
        DecisionValidationError: when genuinely parsed decisions break a risk
            rule. ``full_decision`` on the error holds what was parsed.
    """

    cot_trace = _trace_or_prefix(raw)

    try:
        decisions = extract_decisions(raw)
    except ExtractionError as exc:
        LOG.warning("Decision extraction failed, using wait fallback", error=str(exc)[:500])
        return FullDecision(
            cot_trace=cot_trace,
            decisions=[wait_decision(fallback_reasoning(cot_trace))],
            raw_response=raw,
            fallback=True,
        )

    if not decisions:
        LOG.warning("Completion held an empty decision list, using wait fallback")
        return FullDecision(
            cot_trace=cot_trace,
            decisions=[wait_decision(EMPTY_FALLBACK_REASONING)],
            raw_response=raw,
            fallback=True,
        )

    parsed = FullDecision(cot_trace=cot_trace, decisions=decisions, raw_response=raw)
    try:
        validate_decisions(decisions, limits, cot_trace=cot_trace)
    except DecisionValidationError as exc:
        exc.full_decision = parsed
        raise
    return parsed


def sort_by_priority(decisions: Sequence[Decision]) -> list[Decision]:
    """Closes first, then opens, then hold/wait; unknown actions last. Stable."""

    def _priority(decision: Decision) -> int:
        if decision.is_close:
            return 1
        if decision.is_open:
            return 2
        if decision.action in VALID_ACTIONS:
            return 3
        return 999

    return sorted(decisions, key=_priority)


class DecisionEngine:
    """Obtains a completion for a cycle and converts it into decisions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        price_lookup: Optional[Callable[[str], float]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._price_lookup = price_lookup

    def limits_for(self, context: TradingContext) -> RiskLimits:
        return RiskLimits.from_settings(
            context.account.total_equity,
            self._settings,
            btc_eth_leverage=context.btc_eth_leverage,
            altcoin_leverage=context.altcoin_leverage,
            price_lookup=self._price_lookup,
        )

    async def decide(
        self,
        context: TradingContext,
        completion: CompletionFn,
        *,
        system_prompt: str = "",
        user_prompt: str = "",
    ) -> FullDecision:
        """Run one completion call and parse it.

        Transport failures and timeouts yield a ``wait`` fallback.

        Raises:
            DecisionValidationError: see ``parse_full_decision``.
        """

        timeout = self._settings.ai_call_timeout_seconds
        try:
            raw = await asyncio.wait_for(completion(system_prompt, user_prompt), timeout=timeout)
        except asyncio.TimeoutError:
            LOG.warning("Completion call timed out, using wait fallback", timeout=timeout)
            return self._transport_fallback(f"timed out after {timeout:.0f}s", user_prompt)
        except Exception as exc:
            LOG.warning("Completion call failed, using wait fallback", error=str(exc))
            return self._transport_fallback(str(exc), user_prompt)

        try:
            result = parse_full_decision(raw, self.limits_for(context))
        except DecisionValidationError as exc:
            if exc.full_decision is not None:
                exc.full_decision = exc.full_decision.model_copy(update={"user_prompt": user_prompt})
            raise
        return result.model_copy(update={"user_prompt": user_prompt, "timestamp": datetime.now(timezone.utc)})

    @staticmethod
    def _transport_fallback(error: str, user_prompt: str) -> FullDecision:
        return FullDecision(
            user_prompt=user_prompt,
            cot_trace=f"AI API call failed: {error}",
            decisions=[wait_decision(f"AI API unavailable: {error} - waiting for next cycle")],
            fallback=True,
        )


__all__ = [
    "CompletionFn",
    "DecisionEngine",
    "fallback_reasoning",
    "parse_full_decision",
    "sort_by_priority",
    "wait_decision",
]
