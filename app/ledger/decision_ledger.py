"""Durable per-cycle decision ledger with backend fallback.

Backend selection happens once, in ``DecisionLedger.open``:

1. the shared relational store named by ``LEDGER_DB_DSN``, when configured
   and reachable within ``LEDGER_CONNECT_TIMEOUT_SECONDS``;
2. an embedded SQLite store at ``<LEDGER_LOG_DIR>/<trader_id>/decisions.db``;
3. one JSON file per cycle in the same directory.

The cycle counter lives on the ledger instance. It is restored on open and
reconciled before every append against the committed maximum of the store
and of any cycles held only in JSON files (failed inserts, legacy files not
yet imported), so an external wipe, a reseed or a backend switch never
produces a duplicate or skipped cycle number.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

from app.core.config import Settings, get_settings
from app.core.errors import PersistenceError
from app.core.logging import bind_trader, get_logger, mask_dsn
from app.db.models import EMBEDDED_SCHEMA, SHARED_SCHEMA, LedgerSchema
from app.db.repo import Database
from app.ledger.backends import JsonFileBackend, LedgerBackend, RelationalBackend
from app.ledger.migration import MigrationReport, import_json_records
from app.performance.analyzer import PerformanceAnalyzer
from schemas.decision_record import AccountSnapshot, DecisionRecord
from schemas.performance import PerformanceAnalysis, Statistics


LOG = get_logger(__name__)
T = TypeVar("T")

EMBEDDED_DB_NAME = "decisions.db"
SEED_TRACE = "Initial balance seed"


def reconcile_cycle_number(counter: int, store_max: Optional[int]) -> int:
    """Value the in-memory counter should be incremented from.

    A counter ahead of ``store_max + 1``, or above 1 while only the seed row
    (or nothing) is stored, means the store was reset externally: continue
    from the store. A counter behind the store means another writer or an
    import advanced it: continue from the store as well.

    Callers fold cycles held only in JSON fallback files into ``store_max``
    so those numbers are never handed out again.
    """

    max_cycle = store_max or 0
    expected = max_cycle + 1
    if counter > expected or (max_cycle == 0 and counter > 1):
        return max_cycle
    if counter < max_cycle:
        return max_cycle
    return counter


async def _open_relational(
    dsn: str,
    schema: LedgerSchema,
    *,
    trader_id: str,
    settings: Settings,
) -> RelationalBackend:
    db: Optional[Database] = None
    try:
        db = Database(
            dsn,
            application_name=f"decision-ledger-{trader_id}",
            connect_timeout=settings.ledger_connect_timeout_seconds,
            pool_size=settings.ledger_pool_size,
            max_overflow=settings.ledger_max_overflow,
            schema=settings.ledger_db_schema if schema.multi_tenant else None,
        )
        await db.ping(settings.ledger_connect_timeout_seconds)
        await asyncio.wait_for(
            db.create_schema(schema.base.metadata), timeout=settings.ledger_connect_timeout_seconds
        )
    except Exception as exc:
        if db is not None:
            await db.dispose()
        raise PersistenceError(f"{schema.name} ledger backend unavailable", detail=str(exc)) from exc
    return RelationalBackend(db, schema, trader_id=trader_id)


class DecisionLedger:
    """Append-only store of one trading unit's decision records."""

    def __init__(
        self,
        trader_id: str,
        backend: LedgerBackend,
        *,
        json_store: JsonFileBackend,
        settings: Optional[Settings] = None,
        analyzer: Optional[PerformanceAnalyzer] = None,
    ) -> None:
        self._trader_id = trader_id
        self._backend = backend
        self._json_store = json_store
        self._settings = settings or get_settings()
        self._analyzer = analyzer or PerformanceAnalyzer()
        self._cycle_number = 0
        # highest cycle present only in JSON files next to a relational store
        self._fallback_max = 0
        self._write_lock = asyncio.Lock()
        self._migration_task: Optional[asyncio.Task[Optional[MigrationReport]]] = None
        self._log = bind_trader(LOG, trader_id)

    @classmethod
    async def open(cls, trader_id: str, settings: Optional[Settings] = None) -> "DecisionLedger":
        """Open the best available backend for ``trader_id``."""

        settings = settings or get_settings()
        log = bind_trader(LOG, trader_id)
        log_dir = Path(settings.ledger_log_dir) / trader_id
        json_store = JsonFileBackend(log_dir)
        backend: Optional[LedgerBackend] = None

        if settings.ledger_db_dsn:
            try:
                backend = await _open_relational(
                    settings.ledger_db_dsn, SHARED_SCHEMA, trader_id=trader_id, settings=settings
                )
                log.info("Using shared ledger backend", dsn=mask_dsn(settings.ledger_db_dsn))
            except PersistenceError as exc:
                log.warning(
                    "Shared ledger unreachable, falling back to embedded store",
                    dsn=mask_dsn(settings.ledger_db_dsn),
                    error=exc.detail or str(exc),
                )

        if backend is None:
            db_path = log_dir / EMBEDDED_DB_NAME
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
                backend = await _open_relational(
                    f"sqlite+aiosqlite:///{db_path}", EMBEDDED_SCHEMA, trader_id=trader_id, settings=settings
                )
                log.info("Using embedded ledger backend", path=str(db_path))
            except (OSError, PersistenceError) as exc:
                log.warning("Embedded ledger unavailable, falling back to JSON files", path=str(db_path), error=str(exc))
                backend = json_store

        ledger = cls(trader_id, backend, json_store=json_store, settings=settings)
        await ledger._restore_cycle_number()
        await ledger._start_migration()
        return ledger

    @property
    def trader_id(self) -> str:
        return self._trader_id

    @property
    def backend_kind(self) -> str:
        return self._backend.kind

    @property
    def cycle_number(self) -> int:
        return self._cycle_number

    @property
    def log_dir(self) -> Path:
        return self._json_store.directory

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._settings.ledger_query_timeout_seconds)

    async def _restore_cycle_number(self) -> None:
        try:
            store_max = await self._bounded(self._backend.max_cycle_number())
        except Exception as exc:
            self._log.warning("Could not restore cycle number, starting from 0", error=str(exc))
            store_max = None
        if self._backend is not self._json_store and self._json_store.has_files():
            try:
                self._fallback_max = await self._bounded(self._json_store.max_cycle_number()) or 0
            except Exception as exc:
                self._log.warning("Could not read JSON fallback files", error=str(exc))
        self._cycle_number = max(store_max or 0, self._fallback_max)
        self._log.info(
            "Cycle number restored",
            cycle=self._cycle_number,
            backend=self.backend_kind,
            fallback_max=self._fallback_max,
        )

    def _committed_floor(self, store_max: Optional[int]) -> Optional[int]:
        if not self._fallback_max:
            return store_max
        return max(store_max or 0, self._fallback_max)

    # ------------------------------------------------------------------
    # Legacy import
    # ------------------------------------------------------------------

    async def _start_migration(self) -> None:
        if self._backend is self._json_store or not self._json_store.has_files():
            return
        self._migration_task = asyncio.create_task(
            self._migrate_legacy_records(), name=f"ledger-migrate-{self._trader_id}"
        )

    async def _migrate_legacy_records(self) -> Optional[MigrationReport]:
        try:
            report = await import_json_records(
                self._json_store,
                self._backend,
                lock=self._write_lock,
                timeout=self._settings.ledger_query_timeout_seconds,
            )
        except Exception:
            self._log.exception("Legacy JSON import failed")
            return None
        if report.max_cycle > self._cycle_number:
            self._log.info("Cycle number advanced by legacy import", old=self._cycle_number, new=report.max_cycle)
            self._cycle_number = report.max_cycle
        return report

    async def wait_for_migration(self) -> Optional[MigrationReport]:
        """Await the background legacy import, if one was started."""

        if self._migration_task is None:
            return None
        return await self._migration_task

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, record: DecisionRecord) -> DecisionRecord:
        """Assign the next cycle number to ``record`` and persist it.

        Returns the stored copy. A failed relational insert is written to a
        JSON file instead.

        Raises:
            PersistenceError: when neither the backend nor the JSON fallback
                accepted the record.
        """

        async with self._write_lock:
            try:
                store_max = await self._bounded(self._backend.max_cycle_number())
            except Exception as exc:
                self._log.warning("Could not read committed cycle maximum", error=str(exc))
            else:
                floor = self._committed_floor(store_max)
                realigned = reconcile_cycle_number(self._cycle_number, floor)
                if realigned != self._cycle_number:
                    self._log.warning(
                        "Cycle counter realigned to store",
                        counter=self._cycle_number,
                        store_max=store_max,
                        fallback_max=self._fallback_max,
                        realigned=realigned,
                    )
                    self._cycle_number = realigned

            self._cycle_number += 1
            stored = record.model_copy(
                update={"cycle_number": self._cycle_number, "timestamp": datetime.now(timezone.utc)}
            )

            try:
                await self._bounded(self._backend.insert(stored))
            except Exception as exc:
                if self._backend is self._json_store:
                    raise PersistenceError("Failed to write decision record", detail=str(exc)) from exc
                self._log.warning(
                    "Ledger insert failed, writing JSON fallback", cycle=stored.cycle_number, error=str(exc)
                )
                try:
                    await asyncio.to_thread(self._json_store.write_sync, stored)
                except OSError as file_exc:
                    raise PersistenceError("Failed to write decision record", detail=str(file_exc)) from file_exc
                self._fallback_max = max(self._fallback_max, stored.cycle_number)
        return stored

    async def seed_initial_balance(self, balance: float) -> Optional[DecisionRecord]:
        """Write the cycle-0 baseline row when the store is empty.

        Returns the seed record, or ``None`` when the store already has rows.
        """

        async with self._write_lock:
            if await self._bounded(self._backend.max_cycle_number()) is not None:
                return None
            seed = DecisionRecord(
                cycle_number=0,
                cot_trace=SEED_TRACE,
                decision_json="[]",
                account_state=AccountSnapshot(total_balance=balance, available_balance=balance),
                success=True,
            )
            await self._bounded(self._backend.insert(seed))
            self._cycle_number = 0
            self._log.info("Seeded initial balance", balance=balance)
            return seed

    async def clean_old_records(self, days: int) -> int:
        """Delete records older than ``days`` days. Returns the number removed."""

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._write_lock:
            removed = await self._bounded(self._backend.delete_older_than(cutoff))
        if removed:
            self._log.info("Old decision records removed", removed=removed, days=days)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def latest(self, limit: int) -> list[DecisionRecord]:
        return await self._bounded(self._backend.latest(limit))

    async def all_records(self) -> list[DecisionRecord]:
        return await self._bounded(self._backend.all_records())

    async def by_date(self, day: date) -> list[DecisionRecord]:
        return await self._bounded(self._backend.by_date(day))

    async def first_record(self) -> Optional[DecisionRecord]:
        return await self._bounded(self._backend.first_record())

    async def statistics(self) -> Statistics:
        return await self._bounded(self._backend.statistics())

    async def analyze_performance(self, lookback: int) -> PerformanceAnalysis:
        """Performance over the latest ``lookback`` cycles, or all when <= 0."""

        if lookback <= 0:
            records = await self.all_records()
            widened = None
        else:
            records = await self.latest(lookback)
            widened = await self.latest(lookback * 3)

        if not records:
            return PerformanceAnalysis()

        history = None
        if lookback > 0 and self._analyzer.has_unmatched_closes(records, widened=widened):
            history = await self.all_records()
        return self._analyzer.analyze(records, widened=widened, history=history)

    async def close(self) -> None:
        if self._migration_task is not None and not self._migration_task.done():
            try:
                await asyncio.wait_for(self._migration_task, timeout=self._settings.ledger_query_timeout_seconds)
            except asyncio.TimeoutError:
                self._log.warning("Legacy JSON import still running at close, cancelled")
        await self._backend.close()


__all__ = ["DecisionLedger", "reconcile_cycle_number"]
