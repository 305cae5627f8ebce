"""
Database access for the records repository.

RecordsDatabase owns an optional SQLAlchemy AsyncEngine (asyncpg driver).
When no database is configured every operation raises
DatabaseNotConfiguredError, which the boundary reports as HTTP 503.

The ``execute_with_connection`` helper accepts either an engine or an
existing connection, so connection-scoped building blocks can run inside a
caller's transaction or open their own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from clientrecords.config import RecordsSettings, RecordsTables
from clientrecords.exceptions import DatabaseNotConfiguredError
from clientrecords.stores.schema import ensure_records_schema

logger = logging.getLogger(__name__)


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for ``conn``, opening one only when given an engine.

    Args:
        conn: An engine, or a connection whose transaction the caller owns.
        transactional: For engines, ``begin()`` (commit on exit) when True,
            ``connect()`` when False. Ignored for connections.

    Example:
        >>> async with execute_with_connection(engine) as conn:
        ...     await legacy_store.write_revision_pointer(conn, revision)
    """
    if not isinstance(conn, AsyncEngine):
        yield conn
        return

    opener = conn.begin if transactional else conn.connect
    async with opener() as connection:
        yield connection


class RecordsDatabase:
    """
    Engine holder with one-time schema bootstrap.

    Args:
        engine: The engine, or None when no database is configured.
        tables: Table locations used by the schema bootstrap.
        bootstrap_schema: Create/upgrade the tables on first use.

    Example:
        >>> database = RecordsDatabase.from_settings(settings)
        >>> await database.ensure_ready()
        >>> async with database.transaction() as conn:
        ...     ...
        >>> await database.dispose()
    """

    def __init__(
        self,
        engine: AsyncEngine | None,
        tables: RecordsTables | None = None,
        *,
        bootstrap_schema: bool = False,
    ) -> None:
        self._engine = engine
        self._tables = tables or RecordsTables()
        self._bootstrap_schema = bootstrap_schema
        self._ready = False
        self._ready_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: RecordsSettings,
        *,
        bootstrap_schema: bool = False,
        **engine_options: object,
    ) -> RecordsDatabase:
        """
        Build a database from settings.

        Args:
            settings: Loaded settings; no engine is created without a URL.
            bootstrap_schema: Create/upgrade the tables on first use.
            **engine_options: Passed to ``create_async_engine``.
        """
        engine = None
        if settings.database_url:
            engine = create_async_engine(settings.database_url, **engine_options)
        return cls(engine, settings.tables, bootstrap_schema=bootstrap_schema)

    @property
    def configured(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        """
        The configured engine.

        Raises:
            DatabaseNotConfiguredError: If no engine is configured.
        """
        if self._engine is None:
            raise DatabaseNotConfiguredError()
        return self._engine

    async def ensure_ready(self) -> None:
        """
        Check configuration and run the schema bootstrap once.

        Raises:
            DatabaseNotConfiguredError: If no engine is configured.
        """
        engine = self.engine
        if self._ready or not self._bootstrap_schema:
            return
        async with self._ready_lock:
            if self._ready:
                return
            async with engine.begin() as conn:
                await ensure_records_schema(conn, self._tables)
            self._ready = True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Connection inside ``BEGIN``; commits on success, rolls back on error."""
        await self.ensure_ready()
        async with execute_with_connection(self.engine, transactional=True) as conn:
            yield conn

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        """Connection for reads, without an explicit transaction."""
        await self.ensure_ready()
        async with execute_with_connection(self.engine, transactional=False) as conn:
            yield conn

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.debug("Disposed records database engine")


__all__ = [
    "RecordsDatabase",
    "execute_with_connection",
]
