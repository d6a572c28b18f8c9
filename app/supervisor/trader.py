"""One trading unit: a timer-driven decision cycle bound to its own ledger."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from app.core.config import Settings, get_settings
from app.core.errors import AppError, ConfigurationError, DecisionValidationError, PersistenceError, TraderFault
from app.core.logging import bind_trader, get_logger
from app.decision.engine import CompletionFn, DecisionEngine, sort_by_priority
from app.ledger.decision_ledger import DecisionLedger
from schemas.decision import Decision, DecisionAction, ExecutionResult
from schemas.decision_record import AccountSnapshot, DecisionRecord, PositionSnapshot
from schemas.supervisor import TraderStatus
from schemas.trading_context import AccountInfo, CandidateCoin, PositionInfo, TradingContext


LOG = get_logger(__name__)

NO_OP_ACTIONS = frozenset({"hold", "wait"})


class MarketGateway(Protocol):
    """Account, position and candidate-symbol source for one unit."""

    async def account(self) -> AccountInfo: ...

    async def positions(self) -> list[PositionInfo]: ...

    async def candidate_coins(self) -> list[CandidateCoin]: ...


class OrderExecutor(Protocol):
    async def execute(self, decision: Decision) -> ExecutionResult: ...


class PromptBuilder(Protocol):
    def __call__(self, context: TradingContext) -> tuple[str, str]: ...


def context_prompt(context: TradingContext) -> tuple[str, str]:
    """Default prompt pair: no system prompt, the context as JSON."""

    return "", context.model_dump_json(indent=2)


@dataclass(slots=True)
class TraderConfig:
    trader_id: str
    name: str
    ai_model: str
    initial_balance: float
    scan_interval_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.trader_id.strip():
            raise ConfigurationError("trader_id must not be empty")
        if self.initial_balance <= 0:
            raise ConfigurationError(f"initial balance must be positive for trader '{self.trader_id}'")
        if self.scan_interval_seconds is not None and self.scan_interval_seconds <= 0:
            raise ConfigurationError(f"scan interval must be positive for trader '{self.trader_id}'")


def account_snapshot(account: AccountInfo) -> AccountSnapshot:
    return AccountSnapshot(
        total_balance=account.total_equity,
        available_balance=account.available_balance,
        total_unrealized_profit=account.total_pnl,
        position_count=account.position_count,
        margin_used_pct=account.margin_used_pct,
    )


def position_snapshots(positions: Sequence[PositionInfo]) -> list[PositionSnapshot]:
    return [
        PositionSnapshot(
            symbol=pos.symbol,
            side=pos.side,
            position_amt=pos.quantity,
            entry_price=pos.entry_price,
            mark_price=pos.mark_price,
            unrealized_profit=pos.unrealized_pnl,
            leverage=float(pos.leverage),
            liquidation_price=pos.liquidation_price,
        )
        for pos in positions
    ]


class TraderUnit:
    """Runs decision cycles for one configured trader until stopped.

    A cycle never raises for extraction, validation or persistence problems;
    those end up in the ledger record. Failing to build the trading context
    raises ``TraderFault``, which ``run`` logs before waiting for the next
    interval. Anything else escapes ``run`` and is left to the supervisor.
    """

    def __init__(
        self,
        config: TraderConfig,
        *,
        ledger: DecisionLedger,
        gateway: MarketGateway,
        executor: OrderExecutor,
        completion: CompletionFn,
        prompt_builder: Optional[PromptBuilder] = None,
        engine: Optional[DecisionEngine] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._gateway = gateway
        self._executor = executor
        self._completion = completion
        self._prompt_builder = prompt_builder or context_prompt
        self._settings = settings or get_settings()
        self._engine = engine or DecisionEngine(self._settings)
        self._log = bind_trader(LOG, config.trader_id)

        self._start_time = datetime.now(timezone.utc)
        self._call_count = 0
        self._restarts = 0
        self._running = False
        self._seeded = False
        self._stop_event = asyncio.Event()

    @property
    def trader_id(self) -> str:
        return self._config.trader_id

    @property
    def config(self) -> TraderConfig:
        return self._config

    @property
    def ledger(self) -> DecisionLedger:
        return self._ledger

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def call_count(self) -> int:
        return self._call_count

    @property
    def scan_interval(self) -> float:
        if self._config.scan_interval_seconds and self._config.scan_interval_seconds > 0:
            return self._config.scan_interval_seconds
        return self._settings.scan_interval_minutes * 60

    def mark_restarted(self) -> None:
        self._restarts += 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run the first cycle immediately, then one per interval until ``stop``."""

        self._running = True
        self._stop_event.clear()
        self._log.info(
            "Trading unit started",
            initial_balance=self._config.initial_balance,
            scan_interval_seconds=self.scan_interval,
            backend=self._ledger.backend_kind,
        )
        try:
            await self._seed_ledger()
            while self._running:
                try:
                    await self.run_cycle()
                except AppError as exc:
                    self._log.error("Cycle failed, continuing with next scheduled cycle", error=str(exc))
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.scan_interval)
        finally:
            self._running = False
            self._log.info("Trading unit stopped")

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()

    async def close(self) -> None:
        await self._ledger.close()

    async def _seed_ledger(self) -> None:
        if self._seeded:
            return
        try:
            await self._ledger.seed_initial_balance(self._config.initial_balance)
        except Exception as exc:
            self._log.warning("Initial balance seed failed", error=str(exc))
            return
        self._seeded = True

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def build_context(self) -> TradingContext:
        account = await self._gateway.account()
        positions = await self._gateway.positions()
        candidates = await self._gateway.candidate_coins()

        performance = None
        try:
            performance = await self._ledger.analyze_performance(self._settings.performance_lookback_cycles)
        except Exception as exc:
            self._log.warning("Performance analysis unavailable for this cycle", error=str(exc))

        now = datetime.now(timezone.utc)
        return TradingContext(
            current_time=now,
            runtime_minutes=int((now - self._start_time).total_seconds() // 60),
            call_count=self._call_count,
            account=account,
            positions=positions,
            candidate_coins=candidates,
            performance=performance,
            btc_eth_leverage=self._settings.btc_eth_leverage,
            altcoin_leverage=self._settings.altcoin_leverage,
        )

    async def run_cycle(self) -> DecisionRecord:
        """Execute one decision cycle and return the record as stored.

        Raises:
            TraderFault: when the trading context could not be built. A failed
                record is appended before raising.
        """

        self._call_count += 1
        self._log.info("Decision cycle starting", call=self._call_count)
        record = DecisionRecord()

        try:
            context = await self.build_context()
        except Exception as exc:
            record.success = False
            record.error_message = f"failed to build trading context: {exc}"
            await self._append(record)
            raise TraderFault(
                "failed to build trading context",
                trader_id=self.trader_id,
                context={"call": self._call_count, "error": str(exc)},
            ) from exc

        record.account_state = account_snapshot(context.account)
        record.positions = position_snapshots(context.positions)
        record.candidate_coins = [coin.symbol for coin in context.candidate_coins]

        system_prompt, user_prompt = self._prompt_builder(context)
        record.input_prompt = user_prompt

        try:
            full = await self._engine.decide(
                context, self._completion, system_prompt=system_prompt, user_prompt=user_prompt
            )
        except DecisionValidationError as exc:
            self._log.warning("Decision set rejected by risk validation", error=str(exc), index=exc.index)
            record.success = False
            record.error_message = exc.audit_message()
            record.cot_trace = exc.cot_trace
            if exc.full_decision is not None:
                record.cot_trace = exc.full_decision.cot_trace
                record.decision_json = exc.full_decision.decision_json()
                record.raw_response = exc.full_decision.raw_response
            return await self._append(record)

        record.cot_trace = full.cot_trace
        record.decision_json = full.decision_json()
        record.raw_response = full.raw_response
        if full.fallback:
            self._log.info("No usable decisions, recording wait fallback")

        ordered = self._apply_position_cap(sort_by_priority(full.decisions), len(context.positions), record)
        for decision in ordered:
            record.decisions.append(await self._execute(decision, record))

        await self._refresh_account(record)
        return await self._append(record)

    def _apply_position_cap(
        self, decisions: Sequence[Decision], current_positions: int, record: DecisionRecord
    ) -> list[Decision]:
        max_positions = self._settings.max_open_positions
        if max_positions <= 0:
            return list(decisions)

        slots = max(max_positions - current_positions, 0)
        kept: list[Decision] = []
        opened = 0
        for decision in decisions:
            if decision.is_open:
                if opened >= slots:
                    self._log.warning(
                        "Open skipped, position limit reached",
                        symbol=decision.symbol,
                        action=decision.action,
                        current=current_positions,
                        max_positions=max_positions,
                    )
                    record.execution_log.append(f"⏭ Skipped {decision.symbol} {decision.action} (position limit reached)")
                    continue
                opened += 1
            kept.append(decision)
        return kept

    async def _execute(self, decision: Decision, record: DecisionRecord) -> DecisionAction:
        action = DecisionAction(action=decision.action, symbol=decision.symbol, leverage=decision.leverage)

        if decision.action in NO_OP_ACTIONS:
            result = ExecutionResult(success=True)
        else:
            try:
                result = await self._executor.execute(decision)
            except Exception as exc:
                result = ExecutionResult(success=False, error=str(exc))

        if result.success:
            action.success = True
            action.price = result.price
            action.quantity = result.quantity
            action.order_id = result.order_id
            record.execution_log.append(f"✓ {decision.symbol} {decision.action} succeeded")
        else:
            action.error = result.error
            record.execution_log.append(f"❌ {decision.symbol} {decision.action} failed: {result.error}")
            self._log.warning(
                "Decision execution failed", symbol=decision.symbol, action=decision.action, error=result.error
            )
        return action

    async def _refresh_account(self, record: DecisionRecord) -> None:
        try:
            account = await self._gateway.account()
            positions = await self._gateway.positions()
        except Exception as exc:
            self._log.warning("Post-execution account refresh failed, keeping pre-cycle snapshot", error=str(exc))
            return
        record.account_state = account_snapshot(account)
        record.positions = position_snapshots(positions)

    async def _append(self, record: DecisionRecord) -> DecisionRecord:
        try:
            stored = await self._ledger.append(record)
        except PersistenceError as exc:
            self._log.error("Decision record could not be persisted", error=str(exc), detail=exc.detail)
            return record
        self._log.info(
            "Decision cycle recorded", cycle=stored.cycle_number, success=stored.success, actions=len(stored.decisions)
        )
        return stored

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def status(self) -> TraderStatus:
        return TraderStatus(
            trader_id=self._config.trader_id,
            trader_name=self._config.name,
            ai_model=self._config.ai_model,
            is_running=self._running,
            start_time=self._start_time,
            runtime_minutes=int((datetime.now(timezone.utc) - self._start_time).total_seconds() // 60),
            call_count=self._call_count,
            cycle_number=self._ledger.cycle_number,
            initial_balance=self._config.initial_balance,
            scan_interval_seconds=self.scan_interval,
            ledger_backend=self._ledger.backend_kind,
            restarts=self._restarts,
        )

    async def account_info(self) -> AccountInfo:
        """Live account with P&L measured against the configured initial balance."""

        account = await self._gateway.account()
        initial = self._config.initial_balance
        total_pnl = account.total_equity - initial
        return account.model_copy(
            update={
                "total_pnl": total_pnl,
                "total_pnl_pct": total_pnl / initial * 100 if initial > 0 else 0.0,
            }
        )


__all__ = [
    "MarketGateway",
    "OrderExecutor",
    "PromptBuilder",
    "TraderConfig",
    "TraderUnit",
    "context_prompt",
]
