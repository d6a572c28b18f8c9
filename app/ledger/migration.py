"""Import of legacy per-cycle JSON files into a relational store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from app.core.logging import get_logger
from app.ledger.backends import JsonFileBackend, LedgerBackend
from schemas.decision_record import DecisionRecord


LOG = get_logger(__name__)


@dataclass(slots=True)
class MigrationReport:
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    max_cycle: int = 0


async def _insert(
    target: LedgerBackend,
    record: DecisionRecord,
    lock: Optional[asyncio.Lock],
    timeout: Optional[float],
) -> None:
    if lock is None:
        await asyncio.wait_for(target.insert(record), timeout=timeout)
        return
    async with lock:
        await asyncio.wait_for(target.insert(record), timeout=timeout)


async def import_json_records(
    source: JsonFileBackend,
    target: LedgerBackend,
    *,
    lock: Optional[asyncio.Lock] = None,
    timeout: Optional[float] = None,
) -> MigrationReport:
    """Copy every JSON record whose cycle number is absent from ``target``.

    ``lock`` is held around each single insert only, so live appends sharing
    it interleave with the import. ``max_cycle`` is the highest cycle number
    present in either store once the import finishes.
    """

    report = MigrationReport()
    records = await source.all_records()
    if not records:
        return report

    existing = await target.existing_cycles()
    for record in records:
        if record.cycle_number in existing:
            report.skipped += 1
            continue
        try:
            await _insert(target, record, lock, timeout)
        except IntegrityError:
            report.skipped += 1
            continue
        except Exception as exc:
            LOG.warning("Legacy record import failed", cycle=record.cycle_number, error=str(exc))
            report.failed += 1
            continue
        existing.add(record.cycle_number)
        report.imported += 1

    report.max_cycle = max(existing, default=0)
    LOG.info(
        "Legacy JSON import finished",
        directory=str(source.directory),
        imported=report.imported,
        skipped=report.skipped,
        failed=report.failed,
        max_cycle=report.max_cycle,
    )
    return report


__all__ = ["MigrationReport", "import_json_records"]
