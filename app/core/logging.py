"""Structured logging for the decision core.

Modules log through ``LOG = get_logger(__name__)`` with keyword context.
Trading units bind their identity once with :func:`bind_trader`, and any DSN
that reaches a log event goes through :func:`mask_dsn` first.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Optional

import structlog

_DSN_PASSWORD = re.compile(r"(?P<prefix>://[^:/@]+:)(?P<password>[^@]+)(?P<suffix>@)")

# Driver loggers that echo every statement at INFO.
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncpg")


def _level_number(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)


def setup_logging(level: Optional[str] = None, *, json_logs: Optional[bool] = None) -> None:
    """Configure structlog and route stdlib records through the same renderer.

    ``level`` and ``json_logs`` default to ``LOG_LEVEL`` and ``LOG_JSON``.
    """

    if level is None or json_logs is None:
        from app.core.config import get_settings

        settings = get_settings()
        level = level or settings.log_level
        json_logs = settings.log_json if json_logs is None else json_logs

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    pre_chain: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.CallsiteParameterAdder(
                [structlog.processors.CallsiteParameter.MODULE, structlog.processors.CallsiteParameter.LINENO],
            ),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(_level_number(level))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(_level_number(level), logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_trader(logger: structlog.stdlib.BoundLogger, trader_id: str) -> structlog.stdlib.BoundLogger:
    """Attach the trading unit identity to every event emitted by ``logger``."""

    return logger.bind(trader_id=trader_id)


def mask_dsn(dsn: str) -> str:
    """Hide the password component of a connection string."""

    return _DSN_PASSWORD.sub(r"\g<prefix>****\g<suffix>", dsn)


__all__ = ["setup_logging", "get_logger", "bind_trader", "mask_dsn"]
