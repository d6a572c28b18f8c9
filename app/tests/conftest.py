from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio

from app.core.config import Settings, get_settings
from app.ledger.decision_ledger import DecisionLedger


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Settings:
    """Provide deterministic settings for tests."""

    monkeypatch.setenv("LEDGER_DB_DSN", "")
    monkeypatch.setenv("LEDGER_LOG_DIR", str(tmp_path / "decision_logs"))
    monkeypatch.setenv("LEDGER_CONNECT_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("LEDGER_QUERY_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("AI_CALL_TIMEOUT_SECONDS", "2")
    monkeypatch.setenv("SUPERVISOR_RESTART_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("MAX_OPEN_POSITIONS", "6")
    monkeypatch.setenv("PERFORMANCE_LOOKBACK_CYCLES", "20")
    monkeypatch.setenv("LOG_LEVEL", "INFO")

    get_settings.cache_clear()
    get_settings()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Return settings configured for the test."""

    return get_settings()


@pytest_asyncio.fixture
async def ledger(settings: Settings) -> AsyncIterator[DecisionLedger]:
    """Embedded ledger for a single trading unit."""

    opened = await DecisionLedger.open("trader-a", settings)
    yield opened
    await opened.close()
