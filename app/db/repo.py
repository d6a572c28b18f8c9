"""Database session management and connection helpers."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.errors import DatabaseError
from app.core.logging import get_logger, mask_dsn


LOG = get_logger(__name__)

_SSL_MODES_REQUIRING_TLS = {"require", "verify-ca", "verify-full"}

T = TypeVar("T")


def normalize_dsn(dsn: str) -> tuple[str, dict[str, Any]]:
    """Rewrite a DSN to its async driver form.

    Returns the rewritten URL and driver connect args. ``sslmode`` has no
    meaning to asyncpg, so it is lifted into the ``ssl`` connect arg.
    """

    connect_args: dict[str, Any] = {}
    if dsn.startswith("postgres://"):
        dsn = "postgresql://" + dsn[len("postgres://"):]
    if dsn.startswith("postgresql://"):
        dsn = "postgresql+asyncpg://" + dsn[len("postgresql://"):]
    elif dsn.startswith("sqlite:///"):
        dsn = "sqlite+aiosqlite:///" + dsn[len("sqlite:///"):]

    url = make_url(dsn)
    if url.get_backend_name() == "postgresql":
        query = dict(url.query)
        sslmode = query.pop("sslmode", None)
        query.pop("connect_timeout", None)
        if sslmode in _SSL_MODES_REQUIRING_TLS:
            connect_args["ssl"] = "require"
        url = url.set(query=query)
    return url.render_as_string(hide_password=False), connect_args


def _build_engine(
    dsn: str,
    *,
    application_name: str,
    connect_timeout: float,
    pool_size: int,
    max_overflow: int,
    schema: Optional[str],
) -> AsyncEngine:
    """Create an AsyncEngine for a Postgres or SQLite DSN."""

    url, connect_args = normalize_dsn(dsn)
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}

    if url.startswith("postgresql"):
        server_settings = {"application_name": application_name}
        if schema:
            server_settings["search_path"] = schema
        connect_args["server_settings"] = server_settings
        connect_args["timeout"] = connect_timeout
        engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow)
    else:
        connect_args["timeout"] = connect_timeout

    engine = create_async_engine(url, connect_args=connect_args, **engine_kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record) -> None:  # pragma: no cover - driver callback
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class Database:
    """Wrapper around SQLAlchemy async engine providing session helpers."""

    def __init__(
        self,
        dsn: str,
        *,
        application_name: str = "decision-ledger",
        connect_timeout: float = 30.0,
        pool_size: int = 20,
        max_overflow: int = 10,
        schema: Optional[str] = None,
    ) -> None:
        self._dsn = dsn
        self._engine = _build_engine(
            dsn,
            application_name=application_name,
            connect_timeout=connect_timeout,
            pool_size=pool_size,
            max_overflow=max_overflow,
            schema=schema,
        )
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def masked_dsn(self) -> str:
        return mask_dsn(self._dsn)

    async def ping(self, timeout: float) -> None:
        """Verify the backend answers within ``timeout`` seconds.

        Raises:
            DatabaseError: when the backend is unreachable or too slow.
        """

        async def _check() -> None:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            await asyncio.wait_for(_check(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise DatabaseError("Database ping timed out", detail=self.masked_dsn) from exc
        except Exception as exc:
            raise DatabaseError("Database ping failed", detail=str(exc)) from exc

    async def create_schema(self, metadata: Any) -> None:
        """Create any missing tables and indexes of ``metadata``."""

        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        """Cleanly dispose the engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a new AsyncSession with automatic rollback on errors."""

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def run_in_transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``fn`` in one session; commit on success, roll back on error."""

        async with self.session() as session:
            return await fn(session)


__all__ = ["Database", "normalize_dsn"]
