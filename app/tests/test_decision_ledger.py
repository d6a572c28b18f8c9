import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from app.core.config import get_settings
from app.core.errors import PersistenceError
from app.ledger import decision_ledger as decision_ledger_module
from app.ledger.backends import JsonFileBackend
from app.ledger.decision_ledger import DecisionLedger, reconcile_cycle_number
from app.ledger.migration import import_json_records
from schemas.decision import DecisionAction
from schemas.decision_record import AccountSnapshot, DecisionRecord, PositionSnapshot


def _record(*actions: DecisionAction, success: bool = True, equity: float = 10_000.0) -> DecisionRecord:
    return DecisionRecord(
        input_prompt="prompt",
        cot_trace="reasoning",
        decision_json="[]",
        raw_response="raw completion",
        account_state=AccountSnapshot(total_balance=equity, available_balance=equity),
        positions=[PositionSnapshot(symbol="BTCUSDT", side="long", position_amt=0.1, entry_price=50_000, leverage=5)],
        candidate_coins=["BTCUSDT", "ETHUSDT"],
        decisions=list(actions),
        execution_log=["✓ BTCUSDT open_long succeeded"],
        success=success,
        error_message="" if success else "boom",
    )


def _action(action: str, symbol: str = "BTCUSDT", price: float = 100.0, quantity: float = 2.0) -> DecisionAction:
    return DecisionAction(action=action, symbol=symbol, price=price, quantity=quantity, leverage=5, success=True)


@pytest.mark.parametrize(
    ("counter", "store_max", "expected"),
    [
        (5, 5, 5),
        (6, 5, 6),
        (10, 5, 5),
        (3, 7, 7),
        (3, 0, 0),
        (2, None, 0),
        (1, 0, 1),
        (0, None, 0),
    ],
)
def test_reconcile_cycle_number(counter, store_max, expected):
    assert reconcile_cycle_number(counter, store_max) == expected


@pytest.mark.asyncio
async def test_seed_then_append_starts_at_cycle_one(ledger):
    assert ledger.backend_kind == "embedded"

    seed = await ledger.seed_initial_balance(10_000.0)
    assert seed is not None and seed.is_seed
    assert await ledger.seed_initial_balance(10_000.0) is None

    stored = await ledger.append(_record())
    assert stored.cycle_number == 1
    assert ledger.cycle_number == 1

    first = await ledger.first_record()
    assert first is not None
    assert first.cycle_number == 0
    assert first.account_state.total_balance == 10_000.0


@pytest.mark.asyncio
async def test_restart_continues_from_stored_maximum(settings):
    ledger = await DecisionLedger.open("trader-a", settings)
    await ledger.seed_initial_balance(10_000.0)
    for _ in range(3):
        await ledger.append(_record())
    await ledger.close()

    reopened = await DecisionLedger.open("trader-a", settings)
    try:
        assert reopened.cycle_number == 3
        stored = await reopened.append(_record())
        assert stored.cycle_number == 4
        cycles = [r.cycle_number for r in await reopened.all_records()]
        assert cycles == [0, 1, 2, 3, 4]
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_successful_records_drop_debug_payloads(ledger):
    await ledger.append(_record(_action("open_long")))
    await ledger.append(_record(success=False))

    ok, failed = await ledger.latest(2)
    assert ok.success and ok.raw_response == "" and ok.execution_log == []
    assert ok.input_prompt == "prompt"
    assert ok.candidate_coins == ["BTCUSDT", "ETHUSDT"]
    assert ok.positions[0].symbol == "BTCUSDT"
    assert ok.decisions[0].action == "open_long"

    assert not failed.success
    assert failed.raw_response == "raw completion"
    assert failed.execution_log == ["✓ BTCUSDT open_long succeeded"]
    assert failed.error_message == "boom"


@pytest.mark.asyncio
async def test_latest_is_time_ascending_and_bounded(ledger):
    for _ in range(5):
        await ledger.append(_record())

    latest = await ledger.latest(3)
    assert [r.cycle_number for r in latest] == [3, 4, 5]


@pytest.mark.asyncio
async def test_shared_backend_isolates_trading_units(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("LEDGER_DB_DSN", f"sqlite:///{tmp_path / 'shared.db'}")
    get_settings.cache_clear()
    settings = get_settings()

    alpha = await DecisionLedger.open("alpha", settings)
    beta = await DecisionLedger.open("beta", settings)
    try:
        assert alpha.backend_kind == "shared"
        assert beta.backend_kind == "shared"

        await alpha.append(_record())
        await alpha.append(_record())
        stored = await beta.append(_record())

        assert stored.cycle_number == 1
        assert [r.cycle_number for r in await alpha.all_records()] == [1, 2]
        assert [r.cycle_number for r in await beta.all_records()] == [1]
        assert (await beta.statistics()).total_cycles == 1
    finally:
        await alpha.close()
        await beta.close()


@pytest.mark.asyncio
async def test_unreachable_shared_store_falls_back_without_gaps(monkeypatch, tmp_path: Path):
    missing = tmp_path / "missing" / "nested" / "shared.db"
    monkeypatch.setenv("LEDGER_DB_DSN", f"sqlite:///{missing}")
    get_settings.cache_clear()
    settings = get_settings()

    ledger = await DecisionLedger.open("trader-a", settings)
    assert ledger.backend_kind == "embedded"
    await ledger.append(_record())
    await ledger.append(_record())
    await ledger.close()

    reopened = await DecisionLedger.open("trader-a", settings)
    try:
        assert reopened.backend_kind == "embedded"
        stored = await reopened.append(_record())
        assert stored.cycle_number == 3
        assert [r.cycle_number for r in await reopened.all_records()] == [1, 2, 3]
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_legacy_json_records_are_imported(settings):
    legacy = JsonFileBackend(Path(settings.ledger_log_dir) / "trader-a")
    start = datetime.now(timezone.utc) - timedelta(hours=1)
    for cycle in (1, 2, 3):
        legacy.write_sync(
            _record().model_copy(update={"cycle_number": cycle, "timestamp": start + timedelta(minutes=cycle)})
        )

    ledger = await DecisionLedger.open("trader-a", settings)
    try:
        stored = await ledger.append(_record())
        assert stored.cycle_number == 4

        report = await ledger.wait_for_migration()
        assert report is not None
        assert report.imported == 3
        assert report.max_cycle == 3
        assert [r.cycle_number for r in await ledger.all_records()] == [1, 2, 3, 4]
    finally:
        await ledger.close()

    reopened = await DecisionLedger.open("trader-a", settings)
    try:
        report = await reopened.wait_for_migration()
        assert report is not None
        assert report.imported == 0
        assert report.skipped == 3
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_failed_insert_writes_json_fallback_and_keeps_numbering(ledger, monkeypatch):
    await ledger.append(_record())

    async def _failing_insert(record):
        raise RuntimeError("database is locked")

    original_insert = ledger._backend.insert
    monkeypatch.setattr(ledger._backend, "insert", _failing_insert)
    stored = await ledger.append(_record())
    assert stored.cycle_number == 2
    assert any(ledger.log_dir.glob("decision_*_cycle2.json"))

    monkeypatch.setattr(ledger._backend, "insert", original_insert)
    stored = await ledger.append(_record())
    assert stored.cycle_number == 3


@pytest.mark.asyncio
async def test_consecutive_failed_inserts_never_reuse_a_cycle(settings, monkeypatch):
    ledger = await DecisionLedger.open("trader-a", settings)
    try:
        cycles = [(await ledger.append(_record())).cycle_number]

        async def _failing_insert(record):
            raise RuntimeError("database is locked")

        original_insert = ledger._backend.insert
        monkeypatch.setattr(ledger._backend, "insert", _failing_insert)
        cycles.append((await ledger.append(_record())).cycle_number)
        cycles.append((await ledger.append(_record())).cycle_number)
        monkeypatch.setattr(ledger._backend, "insert", original_insert)
        cycles.append((await ledger.append(_record())).cycle_number)

        assert cycles == [1, 2, 3, 4]
        assert any(ledger.log_dir.glob("decision_*_cycle2.json"))
        assert any(ledger.log_dir.glob("decision_*_cycle3.json"))
        assert [r.cycle_number for r in await ledger.all_records()] == [1, 4]
    finally:
        await ledger.close()

    reopened = await DecisionLedger.open("trader-a", settings)
    try:
        assert reopened.cycle_number == 4
        report = await reopened.wait_for_migration()
        assert report is not None
        assert report.imported == 2
        assert [r.cycle_number for r in await reopened.all_records()] == [1, 2, 3, 4]
        assert (await reopened.append(_record())).cycle_number == 5
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_pending_json_files_count_towards_next_cycle(settings, monkeypatch):
    legacy = JsonFileBackend(Path(settings.ledger_log_dir) / "trader-a")
    for cycle in (1, 2, 3):
        legacy.write_sync(_record().model_copy(update={"cycle_number": cycle}))

    gate = asyncio.Event()
    real_import = decision_ledger_module.import_json_records

    async def _gated_import(*args, **kwargs):
        await gate.wait()
        return await real_import(*args, **kwargs)

    monkeypatch.setattr(decision_ledger_module, "import_json_records", _gated_import)

    ledger = await DecisionLedger.open("trader-a", settings)
    try:
        assert ledger.cycle_number == 3
        stored = await asyncio.wait_for(ledger.append(_record()), timeout=2)
        assert stored.cycle_number == 4

        gate.set()
        report = await ledger.wait_for_migration()
        assert report is not None
        assert report.imported == 3
        assert [r.cycle_number for r in await ledger.all_records()] == [1, 2, 3, 4]
    finally:
        gate.set()
        await ledger.close()


@pytest.mark.asyncio
async def test_import_takes_the_lock_per_record(ledger, tmp_path: Path):
    legacy = JsonFileBackend(tmp_path / "legacy")
    for cycle in (1, 2):
        legacy.write_sync(_record().model_copy(update={"cycle_number": cycle}))

    lock = asyncio.Lock()
    await lock.acquire()
    task = asyncio.create_task(import_json_records(legacy, ledger._backend, lock=lock, timeout=5))
    await asyncio.sleep(0.05)
    assert not task.done()
    assert await ledger._backend.existing_cycles() == set()

    lock.release()
    report = await asyncio.wait_for(task, timeout=5)
    assert report.imported == 2
    assert not lock.locked()


@pytest.mark.asyncio
async def test_failed_child_row_leaves_no_partial_decision(ledger, monkeypatch):
    original_to_row = ledger._backend._to_row

    def _broken_action_row(record):
        row = original_to_row(record)
        row.actions[0].symbol = None
        return row

    monkeypatch.setattr(ledger._backend, "_to_row", _broken_action_row)
    stored = await ledger.append(_record(_action("open_long")))

    assert stored.cycle_number == 1
    assert await ledger._backend.max_cycle_number() is None
    assert await ledger.all_records() == []
    assert any(ledger.log_dir.glob("decision_*_cycle1.json"))

    monkeypatch.setattr(ledger._backend, "_to_row", original_to_row)
    stored = await ledger.append(_record(_action("open_long")))
    assert stored.cycle_number == 2
    records = await ledger.all_records()
    assert [r.cycle_number for r in records] == [2]
    assert len(records[0].decisions) == 1


@pytest.mark.asyncio
async def test_concurrent_units_on_shared_store_number_without_gaps(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("LEDGER_DB_DSN", f"sqlite:///{tmp_path / 'shared.db'}")
    get_settings.cache_clear()
    settings = get_settings()

    units = [await DecisionLedger.open(name, settings) for name in ("alpha", "beta", "gamma")]
    try:
        assert all(unit.backend_kind == "shared" for unit in units)

        stored = await asyncio.gather(*(unit.append(_record()) for _ in range(4) for unit in units))

        for unit in units:
            assert [r.cycle_number for r in await unit.all_records()] == [1, 2, 3, 4]
            assert unit.cycle_number == 4
        assert sorted(r.cycle_number for r in stored) == [1, 1, 1, 2, 2, 2, 3, 3, 3, 4, 4, 4]
        assert not any(unit.log_dir.glob("decision_*.json") for unit in units)
    finally:
        for unit in units:
            await unit.close()


@pytest.mark.asyncio
async def test_json_backend_when_no_database_opens(settings, monkeypatch):
    async def _unavailable(*args, **kwargs):
        raise PersistenceError("embedded ledger backend unavailable")

    monkeypatch.setattr(decision_ledger_module, "_open_relational", _unavailable)

    ledger = await DecisionLedger.open("trader-a", settings)
    assert ledger.backend_kind == "json"
    await ledger.seed_initial_balance(5_000.0)
    await ledger.append(_record())
    await ledger.close()

    reopened = await DecisionLedger.open("trader-a", settings)
    try:
        assert reopened.cycle_number == 1
        stored = await reopened.append(_record())
        assert stored.cycle_number == 2
        first = await reopened.first_record()
        assert first is not None and first.account_state.total_balance == 5_000.0
        assert len(await reopened.by_date(stored.timestamp.date())) == 3
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_external_reset_realigns_counter(ledger):
    for _ in range(3):
        await ledger.append(_record())

    assert await ledger.clean_old_records(0) == 3
    assert await ledger.all_records() == []

    stored = await ledger.append(_record())
    assert stored.cycle_number == 1


@pytest.mark.asyncio
async def test_statistics_count_cycles_and_positions(ledger):
    failed_open = _action("open_short", symbol="ETHUSDT").model_copy(update={"success": False})
    await ledger.append(_record(_action("open_long"), failed_open))
    await ledger.append(_record(_action("close_long")))
    await ledger.append(_record(success=False))

    stats = await ledger.statistics()
    assert stats.total_cycles == 3
    assert stats.successful_cycles == 2
    assert stats.failed_cycles == 1
    assert stats.total_open_positions == 1
    assert stats.total_close_positions == 1


@pytest.mark.asyncio
async def test_by_date_returns_todays_records(ledger):
    stored = await ledger.append(_record())
    assert [r.cycle_number for r in await ledger.by_date(stored.timestamp.date())] == [1]
    assert await ledger.by_date(stored.timestamp.date() - timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_analyze_performance_reaches_outside_window(ledger):
    await ledger.append(_record(_action("open_long", price=100.0, quantity=2.0)))
    for _ in range(3):
        await ledger.append(_record())
    await ledger.append(_record(_action("close_long", price=110.0, quantity=2.0)))

    analysis = await ledger.analyze_performance(1)
    assert analysis.total_trades == 1
    trade = analysis.recent_trades[0]
    assert trade.pnl == pytest.approx(20.0)
    assert trade.margin_used == pytest.approx(40.0)
    assert trade.pnl_pct == pytest.approx(50.0)

    everything = await ledger.analyze_performance(0)
    assert everything.total_trades == 1
    assert everything.profit_factor == 999.0
