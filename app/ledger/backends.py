"""Storage backends for the decision ledger.

``RelationalBackend`` serves both the shared multi-tenant store and the
per-unit embedded store; the schema it is given decides whether rows carry a
``trader_id``. ``JsonFileBackend`` keeps one indented JSON file per cycle and
is the last resort when no database can be opened.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import Select, case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.logging import get_logger
from app.db.models import LedgerSchema
from app.db.repo import Database
from schemas.decision import CLOSE_ACTIONS, OPEN_ACTIONS, DecisionAction
from schemas.decision_record import AccountSnapshot, DecisionRecord, PositionSnapshot
from schemas.performance import Statistics


LOG = get_logger(__name__)

JSON_FILE_PATTERN = "decision_*.json"


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are stored and read back as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class LedgerBackend(ABC):
    """Persistence operations the ledger needs from a store."""

    kind: str

    @abstractmethod
    async def max_cycle_number(self) -> Optional[int]:
        """Highest committed cycle number, ``None`` when the store is empty."""

    @abstractmethod
    async def insert(self, record: DecisionRecord) -> None:
        """Persist one record and its child rows atomically."""

    @abstractmethod
    async def existing_cycles(self) -> set[int]: ...

    @abstractmethod
    async def latest(self, limit: int) -> list[DecisionRecord]:
        """The ``limit`` most recent records in ascending time order."""

    @abstractmethod
    async def all_records(self) -> list[DecisionRecord]: ...

    @abstractmethod
    async def by_date(self, day: date) -> list[DecisionRecord]: ...

    @abstractmethod
    async def first_record(self) -> Optional[DecisionRecord]:
        """The seed row if present, otherwise the earliest record."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int: ...

    async def statistics(self) -> Statistics:
        return statistics_from_records(await self.all_records())

    async def close(self) -> None:
        return None


def statistics_from_records(records: list[DecisionRecord]) -> Statistics:
    stats = Statistics(total_cycles=len(records))
    for record in records:
        if record.success:
            stats.successful_cycles += 1
        else:
            stats.failed_cycles += 1
        for action in record.decisions:
            if not action.success:
                continue
            if action.action in OPEN_ACTIONS:
                stats.total_open_positions += 1
            elif action.action in CLOSE_ACTIONS:
                stats.total_close_positions += 1
    return stats


# ---------------------------------------------------------------------------
# Relational
# ---------------------------------------------------------------------------

class RelationalBackend(LedgerBackend):
    """Ledger store on top of the async SQLAlchemy ``Database``."""

    def __init__(self, db: Database, schema: LedgerSchema, *, trader_id: str) -> None:
        self._db = db
        self._schema = schema
        self._trader_id = trader_id
        self.kind = schema.name

    @property
    def database(self) -> Database:
        return self._db

    def _scoped(self, stmt: Select) -> Select:
        if self._schema.multi_tenant:
            return stmt.where(self._schema.decision.trader_id == self._trader_id)
        return stmt

    def _records_stmt(self) -> Select:
        row = self._schema.decision
        return self._scoped(
            select(row).options(selectinload(row.positions), selectinload(row.actions))
        )

    def _to_row(self, record: DecisionRecord) -> Any:
        schema = self._schema
        account = record.account_state
        # successful cycles drop the verbose completion and execution trace
        keep_debug = not record.success
        row = schema.decision(
            timestamp=as_utc(record.timestamp),
            cycle_number=record.cycle_number,
            input_prompt=record.input_prompt,
            cot_trace=record.cot_trace,
            decision_json=record.decision_json,
            raw_response=record.raw_response if keep_debug else None,
            success=record.success,
            error_message=record.error_message,
            account_total_balance=account.total_balance,
            account_available_balance=account.available_balance,
            account_unrealized_profit=account.total_unrealized_profit,
            account_position_count=account.position_count,
            account_margin_used_pct=account.margin_used_pct,
            execution_log=json.dumps(record.execution_log, ensure_ascii=False) if keep_debug else None,
            candidate_coins=json.dumps(record.candidate_coins, ensure_ascii=False),
        )
        if schema.multi_tenant:
            row.trader_id = self._trader_id
        row.positions = [schema.position(**position.model_dump()) for position in record.positions]
        row.actions = [
            schema.action(
                action=action.action,
                symbol=action.symbol,
                quantity=action.quantity,
                leverage=action.leverage,
                price=action.price,
                order_id=action.order_id or None,
                timestamp=as_utc(action.timestamp),
                success=action.success,
                error=action.error or None,
            )
            for action in record.decisions
        ]
        return row

    @staticmethod
    def _to_record(row: Any) -> DecisionRecord:
        return DecisionRecord(
            timestamp=as_utc(row.timestamp),
            cycle_number=row.cycle_number,
            input_prompt=row.input_prompt or "",
            cot_trace=row.cot_trace or "",
            decision_json=row.decision_json or "",
            raw_response=row.raw_response or "",
            account_state=AccountSnapshot(
                total_balance=row.account_total_balance,
                available_balance=row.account_available_balance,
                total_unrealized_profit=row.account_unrealized_profit,
                position_count=row.account_position_count,
                margin_used_pct=row.account_margin_used_pct,
            ),
            positions=[
                PositionSnapshot(
                    symbol=p.symbol,
                    side=p.side,
                    position_amt=p.position_amt,
                    entry_price=p.entry_price,
                    mark_price=p.mark_price,
                    unrealized_profit=p.unrealized_profit,
                    leverage=p.leverage,
                    liquidation_price=p.liquidation_price,
                )
                for p in row.positions
            ],
            candidate_coins=json.loads(row.candidate_coins) if row.candidate_coins else [],
            decisions=[
                DecisionAction(
                    action=a.action,
                    symbol=a.symbol,
                    quantity=a.quantity,
                    leverage=a.leverage or 0,
                    price=a.price,
                    order_id=a.order_id or 0,
                    timestamp=as_utc(a.timestamp),
                    success=a.success,
                    error=a.error or "",
                )
                for a in row.actions
            ],
            execution_log=json.loads(row.execution_log) if row.execution_log else [],
            success=row.success,
            error_message=row.error_message or "",
        )

    async def max_cycle_number(self) -> Optional[int]:
        stmt = self._scoped(select(func.max(self._schema.decision.cycle_number)))
        async with self._db.session() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def insert(self, record: DecisionRecord) -> None:
        row = self._to_row(record)

        async def _write(session: AsyncSession) -> None:
            session.add(row)
            await session.flush()

        await self._db.run_in_transaction(_write)

    async def existing_cycles(self) -> set[int]:
        stmt = self._scoped(select(self._schema.decision.cycle_number))
        async with self._db.session() as session:
            return set((await session.execute(stmt)).scalars().all())

    async def _fetch(self, stmt: Select) -> list[DecisionRecord]:
        async with self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._to_record(row) for row in rows]

    async def latest(self, limit: int) -> list[DecisionRecord]:
        row = self._schema.decision
        stmt = self._records_stmt().order_by(row.timestamp.desc(), row.id.desc()).limit(limit)
        records = await self._fetch(stmt)
        records.reverse()
        return records

    async def all_records(self) -> list[DecisionRecord]:
        row = self._schema.decision
        return await self._fetch(self._records_stmt().order_by(row.timestamp.asc(), row.id.asc()))

    async def by_date(self, day: date) -> list[DecisionRecord]:
        row = self._schema.decision
        start, end = day_bounds(day)
        stmt = (
            self._records_stmt()
            .where(row.timestamp >= start, row.timestamp < end)
            .order_by(row.timestamp.asc(), row.id.asc())
        )
        return await self._fetch(stmt)

    async def first_record(self) -> Optional[DecisionRecord]:
        row = self._schema.decision
        seed = await self._fetch(self._records_stmt().where(row.cycle_number == 0).limit(1))
        if seed:
            return seed[0]
        earliest = await self._fetch(self._records_stmt().order_by(row.timestamp.asc(), row.id.asc()).limit(1))
        return earliest[0] if earliest else None

    async def delete_older_than(self, cutoff: datetime) -> int:
        row = self._schema.decision
        stmt = delete(row).where(row.timestamp < as_utc(cutoff))
        if self._schema.multi_tenant:
            stmt = stmt.where(row.trader_id == self._trader_id)
        async with self._db.session() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            return result.rowcount or 0

    async def statistics(self) -> Statistics:
        decision, action = self._schema.decision, self._schema.action
        cycles_stmt = self._scoped(
            select(
                func.count(decision.id),
                func.coalesce(func.sum(case((decision.success.is_(True), 1), else_=0)), 0),
            )
        )
        actions_stmt = self._scoped(
            select(action.action, func.count(action.id))
            .join(decision, action.decision_id == decision.id)
            .where(action.success.is_(True))
            .group_by(action.action)
        )
        async with self._db.session() as session:
            total, successful = (await session.execute(cycles_stmt)).one()
            per_action = {name: int(count) for name, count in (await session.execute(actions_stmt)).all()}
        total, successful = int(total), int(successful)

        return Statistics(
            total_cycles=total,
            successful_cycles=successful,
            failed_cycles=total - successful,
            total_open_positions=sum(per_action.get(name, 0) for name in OPEN_ACTIONS),
            total_close_positions=sum(per_action.get(name, 0) for name in CLOSE_ACTIONS),
        )

    async def close(self) -> None:
        await self._db.dispose()


# ---------------------------------------------------------------------------
# JSON files
# ---------------------------------------------------------------------------

_LIST_FIELDS = ("positions", "candidate_coins", "decisions", "execution_log")


def json_filename(record: DecisionRecord) -> str:
    return f"decision_{as_utc(record.timestamp):%Y%m%d_%H%M%S}_cycle{record.cycle_number}.json"


def load_record_file(path: Path) -> DecisionRecord:
    payload = json.loads(path.read_text(encoding="utf-8"))
    for name in _LIST_FIELDS:
        if payload.get(name) is None:
            payload[name] = []
    return DecisionRecord.model_validate(payload)


class JsonFileBackend(LedgerBackend):
    """One indented JSON document per cycle under ``directory``."""

    kind = "json"

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def has_files(self) -> bool:
        return self._dir.is_dir() and any(self._dir.glob(JSON_FILE_PATTERN))

    def write_sync(self, record: DecisionRecord) -> Path:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / json_filename(record)
        path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        return path

    def _load(self, pattern: str = JSON_FILE_PATTERN) -> list[DecisionRecord]:
        if not self._dir.is_dir():
            return []
        records: list[DecisionRecord] = []
        for path in sorted(self._dir.glob(pattern)):
            try:
                records.append(load_record_file(path))
            except (OSError, ValueError) as exc:
                LOG.warning("Skipping unreadable decision file", path=str(path), error=str(exc))
        records.sort(key=lambda r: (as_utc(r.timestamp), r.cycle_number))
        return records

    async def max_cycle_number(self) -> Optional[int]:
        records = await asyncio.to_thread(self._load)
        if not records:
            return None
        return max(r.cycle_number for r in records)

    async def insert(self, record: DecisionRecord) -> None:
        await asyncio.to_thread(self.write_sync, record)

    async def existing_cycles(self) -> set[int]:
        return {r.cycle_number for r in await asyncio.to_thread(self._load)}

    async def latest(self, limit: int) -> list[DecisionRecord]:
        records = await asyncio.to_thread(self._load)
        return records[-limit:] if limit > 0 else []

    async def all_records(self) -> list[DecisionRecord]:
        return await asyncio.to_thread(self._load)

    async def by_date(self, day: date) -> list[DecisionRecord]:
        return await asyncio.to_thread(self._load, f"decision_{day:%Y%m%d}_*.json")

    async def first_record(self) -> Optional[DecisionRecord]:
        records = await asyncio.to_thread(self._load)
        for record in records:
            if record.cycle_number == 0:
                return record
        return records[0] if records else None

    def _delete_older_than(self, cutoff: datetime) -> int:
        removed = 0
        if not self._dir.is_dir():
            return removed
        cutoff = as_utc(cutoff)
        for path in self._dir.glob(JSON_FILE_PATTERN):
            try:
                record = load_record_file(path)
            except (OSError, ValueError):
                continue
            if as_utc(record.timestamp) < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    async def delete_older_than(self, cutoff: datetime) -> int:
        return await asyncio.to_thread(self._delete_older_than, cutoff)


__all__ = [
    "LedgerBackend",
    "RelationalBackend",
    "JsonFileBackend",
    "as_utc",
    "json_filename",
    "load_record_file",
    "statistics_from_records",
]
