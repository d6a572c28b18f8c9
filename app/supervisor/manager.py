"""Supervises trading units, isolating faults so one unit never stops another."""

from __future__ import annotations

import asyncio
from typing import Optional

from app.core.config import Settings, get_settings
from app.core.errors import TraderError
from app.core.logging import bind_trader, get_logger
from app.supervisor.trader import TraderUnit
from schemas.supervisor import ComparisonData, TraderComparison
from schemas.trading_context import AccountInfo


LOG = get_logger(__name__)

SHARED_EQUITY_TOLERANCE = 0.01


class TraderSupervisor:
    """Owns one ``asyncio`` task per trading unit.

    A unit whose loop raises is logged with its traceback, given one restart
    after ``SUPERVISOR_RESTART_BACKOFF_SECONDS`` and, if the restart also
    fails, left stopped.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._traders: dict[str, TraderUnit] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stopping = False

    def add_trader(self, unit: TraderUnit) -> None:
        if unit.trader_id in self._traders:
            raise TraderError(f"trader ID '{unit.trader_id}' already exists")
        self._traders[unit.trader_id] = unit
        LOG.info("Trading unit registered", trader_id=unit.trader_id, name=unit.config.name)

    def get_trader(self, trader_id: str) -> TraderUnit:
        try:
            return self._traders[trader_id]
        except KeyError:
            raise TraderError(f"trader ID '{trader_id}' does not exist") from None

    @property
    def trader_ids(self) -> list[str]:
        return list(self._traders)

    def task_for(self, trader_id: str) -> Optional[asyncio.Task[None]]:
        return self._tasks.get(trader_id)

    def start_all(self) -> None:
        """Start every registered unit that is not already running."""

        self._stopping = False
        for trader_id, unit in self._traders.items():
            task = self._tasks.get(trader_id)
            if task is not None and not task.done():
                continue
            self._tasks[trader_id] = asyncio.create_task(self._supervise(unit), name=f"trader-{trader_id}")
        LOG.info("Trading units started", count=len(self._tasks))

    async def _supervise(self, unit: TraderUnit) -> None:
        log = bind_trader(LOG, unit.trader_id)
        try:
            await unit.run()
            return
        except Exception:
            log.exception(
                "Trading unit faulted, restarting after backoff",
                backoff_seconds=self._settings.supervisor_restart_backoff_seconds,
            )

        await asyncio.sleep(self._settings.supervisor_restart_backoff_seconds)
        if self._stopping:
            return

        unit.mark_restarted()
        log.info("Restarting trading unit")
        try:
            await unit.run()
        except Exception:
            log.exception("Trading unit restart failed, not retrying")

    async def stop_all(self, timeout: float = 30.0) -> None:
        """Stop every unit, wait for in-flight cycles, then close the ledgers."""

        self._stopping = True
        for unit in self._traders.values():
            unit.stop()

        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                LOG.warning("Trading unit did not stop in time, cancelling", task=task.get_name())
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        for unit in self._traders.values():
            try:
                await unit.close()
            except Exception as exc:
                LOG.warning("Ledger close failed", trader_id=unit.trader_id, error=str(exc))
        LOG.info("Trading units stopped", count=len(self._traders))

    async def comparison_data(self) -> ComparisonData:
        """Side-by-side equity and P&L for every unit.

        When several units report the same equity (within 0.01) they are
        assumed to trade one shared account, and that equity is split between
        them in proportion to their initial balances.
        """

        if not self._traders:
            return ComparisonData()

        units = list(self._traders.values())
        initial = {u.trader_id: max(u.config.initial_balance, 0.0) for u in units}
        total_initial = sum(initial.values())

        accounts: dict[str, Optional[AccountInfo]] = {}
        for unit in units:
            try:
                accounts[unit.trader_id] = await unit.account_info()
            except Exception as exc:
                LOG.warning("Account lookup failed, reporting initial balance", trader_id=unit.trader_id, error=str(exc))
                accounts[unit.trader_id] = None

        shared_equity: Optional[float] = None
        live = [a for a in accounts.values() if a is not None]
        if len(units) > 1 and len(live) == len(units):
            first = live[0].total_equity
            if all(abs(a.total_equity - first) <= SHARED_EQUITY_TOLERANCE for a in live):
                shared_equity = first
                LOG.info("Shared account detected", traders=len(units), equity=first)

        rows: list[TraderComparison] = []
        for unit in units:
            status = unit.status()
            account = accounts[unit.trader_id]
            ib = initial[unit.trader_id]
            if account is None:
                rows.append(
                    TraderComparison(
                        trader_id=unit.trader_id,
                        trader_name=unit.config.name,
                        ai_model=unit.config.ai_model,
                        total_equity=ib,
                        total_pnl=0.0,
                        total_pnl_pct=0.0,
                        position_count=0,
                        margin_used_pct=0.0,
                        call_count=status.call_count,
                        is_running=status.is_running,
                        demo=True,
                    )
                )
                continue

            equity, pnl, pnl_pct = account.total_equity, account.total_pnl, account.total_pnl_pct
            if shared_equity is not None and total_initial > 0:
                equity = shared_equity * ib / total_initial
                pnl = equity - ib
                pnl_pct = pnl / ib * 100 if ib > 0 else 0.0

            rows.append(
                TraderComparison(
                    trader_id=unit.trader_id,
                    trader_name=unit.config.name,
                    ai_model=unit.config.ai_model,
                    total_equity=equity,
                    total_pnl=pnl,
                    total_pnl_pct=pnl_pct,
                    position_count=account.position_count,
                    margin_used_pct=account.margin_used_pct,
                    call_count=status.call_count,
                    is_running=status.is_running,
                )
            )

        return ComparisonData(traders=rows, count=len(rows), shared_account=shared_equity is not None)


__all__ = ["TraderSupervisor"]
