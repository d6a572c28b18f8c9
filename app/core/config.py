"""Application configuration loaded from environment via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the decision core and its ledger."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
    )

    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    ledger_db_dsn: Optional[str] = Field(default=None, alias="LEDGER_DB_DSN")
    ledger_db_schema: str = Field("public", alias="LEDGER_DB_SCHEMA")
    ledger_log_dir: Path = Field(Path("decision_logs"), alias="LEDGER_LOG_DIR")
    ledger_connect_timeout_seconds: float = Field(30.0, alias="LEDGER_CONNECT_TIMEOUT_SECONDS", gt=0)
    ledger_query_timeout_seconds: float = Field(30.0, alias="LEDGER_QUERY_TIMEOUT_SECONDS", gt=0)
    ledger_pool_size: int = Field(20, alias="LEDGER_POOL_SIZE", ge=1)
    ledger_max_overflow: int = Field(10, alias="LEDGER_MAX_OVERFLOW", ge=0)

    btc_eth_leverage: int = Field(5, alias="BTC_ETH_LEVERAGE")
    altcoin_leverage: int = Field(5, alias="ALTCOIN_LEVERAGE")
    major_margin_multiple: float = Field(0.50, alias="MAJOR_MARGIN_MULTIPLE", gt=0)
    altcoin_margin_multiple: float = Field(0.40, alias="ALTCOIN_MARGIN_MULTIPLE", gt=0)
    min_risk_reward_ratio: float = Field(3.0, alias="MIN_RISK_REWARD_RATIO", gt=0)

    ai_call_timeout_seconds: float = Field(120.0, alias="AI_CALL_TIMEOUT_SECONDS", gt=0)
    scan_interval_minutes: float = Field(3.0, alias="SCAN_INTERVAL_MINUTES", gt=0)
    supervisor_restart_backoff_seconds: float = Field(5.0, alias="SUPERVISOR_RESTART_BACKOFF_SECONDS", ge=0)
    max_open_positions: int = Field(6, alias="MAX_OPEN_POSITIONS", ge=0)
    performance_lookback_cycles: int = Field(100, alias="PERFORMANCE_LOOKBACK_CYCLES", ge=0)

    @field_validator("ledger_db_dsn", mode="before")
    @classmethod
    def _normalize_dsn(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        if value in ("", "null", "None"):
            return None
        return value

    @field_validator("btc_eth_leverage", "altcoin_leverage", mode="after")
    @classmethod
    def _default_leverage(cls, value: int) -> int:
        """Non-positive leverage bounds fall back to the conservative 5x default."""
        return value if value > 0 else 5


@lru_cache(1)
def get_settings() -> Settings:
    """Return cached Settings instance."""

    return Settings()  # type: ignore[call-arg]


__all__ = ["Settings", "get_settings"]
