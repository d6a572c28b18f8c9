"""Combining decisions from several agents into one cycle decision.

Each agent is an independent completion source run through the same
``DecisionEngine``. Their ``FullDecision`` outputs are merged with one of four
modes:

* ``voting``: keep ``(symbol, action)`` pairs proposed by a strict majority;
* ``weighted``: keep pairs whose summed, normalized agent weight exceeds 0.5,
  with confidence averaged by weight;
* ``unanimous``: use the first agent's output only when every agent proposed
  the same set of pairs;
* ``best``: use the output holding the most confident trade, else the most
  confident decision of any kind.

When a mode finds no agreement the result is a single ``wait`` for ``ALL``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, Field, model_validator

from app.core.errors import ConsensusError, DecisionValidationError
from app.core.logging import get_logger
from app.decision.engine import FALLBACK_SYMBOL, CompletionFn, DecisionEngine, wait_decision
from schemas.decision import CLOSE_ACTIONS, OPEN_ACTIONS, Decision, FullDecision
from schemas.trading_context import TradingContext


LOG = get_logger(__name__)

ConsensusMode = Literal["voting", "weighted", "unanimous", "best"]

TRACE_AGENTS = 3
WEIGHT_MAJORITY = 0.5
TRADE_ACTIONS = OPEN_ACTIONS | CLOSE_ACTIONS | {"hold"}


class AgentConfig(BaseModel):
    """One agent taking part in a multi-agent decision."""

    model_config = {"extra": "forbid"}

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    role: str = Field("", description="Free-form focus, e.g. technical, momentum, risk or trend.")
    weight: float = Field(0.0, ge=0.0, le=1.0, description="Weight for weighted consensus; 0 means equal share.")


class ConsensusConfig(BaseModel):
    model_config = {"extra": "forbid"}

    mode: ConsensusMode = "voting"
    agents: list[AgentConfig] = Field(default_factory=list)
    fast_first: bool = Field(False, description="Stop waiting once min_agents have answered.")
    min_agents: int = Field(1, ge=0)
    max_wait_seconds: float = Field(60.0, gt=0)

    @model_validator(mode="after")
    def _check_agents(self) -> "ConsensusConfig":
        if not self.agents:
            raise ValueError("at least one agent must be configured")
        if self.min_agents > len(self.agents):
            raise ValueError(
                f"min_agents ({self.min_agents}) cannot be greater than total agents ({len(self.agents)})"
            )
        seen: set[str] = set()
        for idx, agent in enumerate(self.agents):
            if agent.id in seen:
                raise ValueError(f"agent[{idx}]: duplicate ID '{agent.id}'")
            seen.add(agent.id)
        return self

    def normalized_weights(self) -> dict[str, float]:
        share = 1.0 / len(self.agents)
        raw = {agent.id: agent.weight or share for agent in self.agents}
        total = sum(raw.values())
        return {agent_id: weight / total for agent_id, weight in raw.items()}


@dataclass(slots=True)
class AgentResult:
    agent_id: str
    decision: FullDecision


def _key(decision: Decision) -> tuple[str, str]:
    return decision.symbol, decision.action


def _wait_result(reason: str, results: Sequence[AgentResult], raw_response: str) -> FullDecision:
    return FullDecision(
        user_prompt=results[0].decision.user_prompt if results else "",
        cot_trace=reason,
        decisions=[wait_decision(reason)],
        raw_response=raw_response,
        fallback=True,
    )


def _combined_trace(results: Sequence[AgentResult], weights: Optional[Mapping[str, float]] = None) -> str:
    parts = []
    for result in results[:TRACE_AGENTS]:
        if weights is None:
            header = f"=== Agent {result.agent_id} ==="
        else:
            header = f"=== Agent {result.agent_id} (weight: {weights.get(result.agent_id, 0.0) * 100:.1f}%) ==="
        parts.append(f"{header}\n{result.decision.cot_trace}\n\n")
    return "".join(parts)


def _voting(results: Sequence[AgentResult]) -> FullDecision:
    votes: dict[tuple[str, str], int] = {}
    templates: dict[tuple[str, str], Decision] = {}
    for result in results:
        for decision in result.decision.decisions:
            key = _key(decision)
            votes[key] = votes.get(key, 0) + 1
            templates.setdefault(key, decision)

    threshold = len(results) // 2 or 1
    agreed = [templates[key] for key, count in votes.items() if count > threshold]
    raw = f"Consensus from {len(results)} agents"
    if not agreed:
        return _wait_result("No majority consensus reached", results, raw)

    return FullDecision(
        user_prompt=results[0].decision.user_prompt,
        cot_trace=_combined_trace(results),
        decisions=agreed,
        raw_response=raw,
    )


def _weighted(results: Sequence[AgentResult], config: ConsensusConfig) -> FullDecision:
    weights = config.normalized_weights()
    vote_weight: dict[tuple[str, str], float] = {}
    confidence_sum: dict[tuple[str, str], float] = {}
    templates: dict[tuple[str, str], Decision] = {}
    for result in results:
        weight = weights.get(result.agent_id, 0.0)
        for decision in result.decision.decisions:
            key = _key(decision)
            vote_weight[key] = vote_weight.get(key, 0.0) + weight
            confidence_sum[key] = confidence_sum.get(key, 0.0) + decision.confidence * weight
            templates.setdefault(key, decision)

    agreed = []
    for key, total in vote_weight.items():
        if total > WEIGHT_MAJORITY:
            confidence = int(confidence_sum[key] / total)
            agreed.append(templates[key].model_copy(update={"confidence": confidence}))

    raw = f"Weighted consensus from {len(results)} agents"
    if not agreed:
        return _wait_result("No weighted consensus reached", results, raw)

    return FullDecision(
        user_prompt=results[0].decision.user_prompt,
        cot_trace=_combined_trace(results, weights),
        decisions=agreed,
        raw_response=raw,
    )


def _unanimous(results: Sequence[AgentResult]) -> FullDecision:
    expected = {_key(d) for d in results[0].decision.decisions}
    for result in results[1:]:
        if {_key(d) for d in result.decision.decisions} != expected:
            return _wait_result(
                "Agents did not reach unanimous agreement", results, f"Unanimous check over {len(results)} agents"
            )
    return results[0].decision


def _best(results: Sequence[AgentResult]) -> FullDecision:
    best_trade: Optional[AgentResult] = None
    best_trade_confidence = -1
    best_any = results[0]
    best_any_confidence = -1
    for result in results:
        for decision in result.decision.decisions:
            if decision.action in TRADE_ACTIONS and decision.symbol != FALLBACK_SYMBOL:
                if decision.confidence > best_trade_confidence:
                    best_trade, best_trade_confidence = result, decision.confidence
            if decision.confidence > best_any_confidence:
                best_any, best_any_confidence = result, decision.confidence
    chosen = best_trade or best_any
    LOG.info("Best agent selected", agent_id=chosen.agent_id, trade=best_trade is not None)
    return chosen.decision


def apply_consensus(results: Sequence[AgentResult], config: ConsensusConfig) -> FullDecision:
    """Merge agent outputs according to ``config.mode``.

    Raises:
        ConsensusError: when ``results`` is empty.
    """

    if not results:
        raise ConsensusError("no agent results to combine")

    usable = [r for r in results if r.decision.decisions]
    if not usable:
        return _wait_result("All agents recommended waiting", results, f"Consensus from {len(results)} agents")
    if len(usable) == 1:
        return usable[0].decision

    if config.mode == "weighted":
        merged = _weighted(usable, config)
    elif config.mode == "unanimous":
        merged = _unanimous(usable)
    elif config.mode == "best":
        merged = _best(usable)
    else:
        merged = _voting(usable)

    LOG.info("Consensus applied", mode=config.mode, agents=len(usable), decisions=len(merged.decisions))
    return merged


class MultiAgentEngine:
    """Runs one completion per agent concurrently and merges the results."""

    def __init__(self, engine: DecisionEngine, config: ConsensusConfig) -> None:
        self._engine = engine
        self._config = config

    async def _run_agent(
        self,
        agent_id: str,
        context: TradingContext,
        completion: CompletionFn,
        system_prompt: str,
        user_prompt: str,
    ) -> Optional[AgentResult]:
        start = asyncio.get_running_loop().time()
        try:
            decision = await self._engine.decide(
                context, completion, system_prompt=system_prompt, user_prompt=user_prompt
            )
        except DecisionValidationError as exc:
            LOG.warning("Agent decision rejected", agent_id=agent_id, error=str(exc))
            return None
        LOG.info(
            "Agent completed",
            agent_id=agent_id,
            seconds=round(asyncio.get_running_loop().time() - start, 2),
        )
        return AgentResult(agent_id=agent_id, decision=decision)

    async def decide(
        self,
        context: TradingContext,
        completions: Mapping[str, CompletionFn],
        *,
        system_prompt: str = "",
        user_prompt: str = "",
    ) -> FullDecision:
        """Collect agent decisions under ``max_wait_seconds`` and merge them.

        ``completions`` maps agent IDs to completion callables; configured
        agents without one are skipped.

        Raises:
            ConsensusError: when no agent returned a decision in time.
        """

        config = self._config
        LOG.info("Multi-agent decision started", agents=len(config.agents), mode=config.mode)
        tasks = [
            asyncio.create_task(
                self._run_agent(agent.id, context.model_copy(deep=True), completions[agent.id],
                                system_prompt, user_prompt)
            )
            for agent in config.agents
            if agent.id in completions
        ]
        results: list[AgentResult] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.max_wait_seconds
        pending = set(tasks)
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    LOG.warning(
                        "Multi-agent wait timed out",
                        timeout=config.max_wait_seconds,
                        collected=len(results),
                        agents=len(tasks),
                    )
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in tasks:
                    if task in done:
                        result = task.result()
                        if result is not None:
                            results.append(result)
                if config.fast_first and config.min_agents and len(results) >= config.min_agents:
                    LOG.info("Fast-first threshold reached", collected=len(results))
                    break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if not results:
            raise ConsensusError("no agents returned valid decisions")
        merged = apply_consensus(results, config)
        return merged.model_copy(update={"timestamp": datetime.now(timezone.utc)})


__all__ = [
    "AgentConfig",
    "AgentResult",
    "ConsensusConfig",
    "ConsensusMode",
    "MultiAgentEngine",
    "apply_consensus",
]
