from __future__ import annotations

import logging

import pytest
import structlog
from sqlalchemy import text

from app.core.config import Settings, get_settings
from app.core.errors import DecisionValidationError, PersistenceError, TraderFault
from app.core.logging import mask_dsn, setup_logging
from app.db.repo import Database, normalize_dsn


@pytest.mark.parametrize(
    ("dsn", "expected_url", "expected_args"),
    [
        ("postgres://u:p@db:5432/ledger", "postgresql+asyncpg://u:p@db:5432/ledger", {}),
        ("postgresql://u:p@db/ledger?sslmode=require", "postgresql+asyncpg://u:p@db/ledger", {"ssl": "require"}),
        ("postgresql://u:p@db/ledger?sslmode=disable", "postgresql+asyncpg://u:p@db/ledger", {}),
        ("sqlite:///data/decisions.db", "sqlite+aiosqlite:///data/decisions.db", {}),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db", {}),
    ],
)
def test_normalize_dsn(dsn: str, expected_url: str, expected_args: dict) -> None:
    url, connect_args = normalize_dsn(dsn)
    assert url == expected_url
    assert connect_args == expected_args


def test_mask_dsn_hides_password() -> None:
    assert mask_dsn("postgresql://trader:s3cret@db:5432/ledger") == "postgresql://trader:****@db:5432/ledger"
    assert mask_dsn("sqlite:///decisions.db") == "sqlite:///decisions.db"


@pytest.mark.parametrize("raw", ["", "   ", "null", "None"])
def test_blank_dsn_means_no_shared_store(raw: str) -> None:
    assert Settings(LEDGER_DB_DSN=raw).ledger_db_dsn is None


def test_dsn_is_trimmed() -> None:
    assert Settings(LEDGER_DB_DSN=" sqlite:///a.db ").ledger_db_dsn == "sqlite:///a.db"


def test_non_positive_leverage_falls_back_to_default() -> None:
    settings = Settings(LEDGER_DB_DSN="", BTC_ETH_LEVERAGE=0, ALTCOIN_LEVERAGE=-2)
    assert settings.btc_eth_leverage == 5
    assert settings.altcoin_leverage == 5

    assert Settings(LEDGER_DB_DSN="", ALTCOIN_LEVERAGE=3).altcoin_leverage == 3


def test_error_context_is_kept() -> None:
    fault = TraderFault("cycle failed", trader_id="t1")
    assert fault.trader_id == "t1"
    assert fault.context == {}

    err = PersistenceError("shared ledger backend unavailable", detail="timeout")
    assert err.detail == "timeout"

    bare = DecisionValidationError("bad stop")
    assert bare.audit_message().startswith("decision validation failed: bad stop")


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    get_settings.cache_clear()


def test_setup_logging_quiets_driver_loggers(restore_logging) -> None:
    setup_logging("DEBUG", json_logs=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert logging.getLogger("aiosqlite").level == logging.WARNING


def test_setup_logging_reads_settings(monkeypatch, restore_logging) -> None:
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    monkeypatch.setenv("LEDGER_DB_DSN", "")
    get_settings.cache_clear()

    setup_logging()

    assert logging.getLogger().level == logging.ERROR
    assert logging.getLogger("asyncpg").level == logging.ERROR


@pytest.mark.asyncio
async def test_run_in_transaction_commits_or_rolls_back(tmp_path) -> None:
    db = Database(f"sqlite:///{tmp_path / 'tx.db'}", connect_timeout=5)
    try:
        async with db.engine.begin() as conn:
            await conn.execute(text("CREATE TABLE notes (body TEXT NOT NULL)"))

        async def _insert(session) -> str:
            await session.execute(text("INSERT INTO notes (body) VALUES ('kept')"))
            return "done"

        async def _insert_then_fail(session) -> None:
            await session.execute(text("INSERT INTO notes (body) VALUES ('dropped')"))
            raise RuntimeError("abort")

        assert await db.run_in_transaction(_insert) == "done"
        with pytest.raises(RuntimeError, match="abort"):
            await db.run_in_transaction(_insert_then_fail)

        async def _bodies(session) -> list[str]:
            return list((await session.execute(text("SELECT body FROM notes"))).scalars().all())

        assert await db.run_in_transaction(_bodies) == ["kept"]
    finally:
        await db.dispose()
