"""
Shared pytest fixtures for integration tests.

This module provides a PostgreSQL container via testcontainers and, per test,
an isolated schema with the records tables bootstrapped in it.

If testcontainers or Docker is not available, tests are automatically skipped.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from clientrecords.config import RecordsFlags, RecordsSettings, RecordsTables
from clientrecords.database import RecordsDatabase
from clientrecords.metrics import RecordsMetrics
from clientrecords.observability import MockTracer
from clientrecords.repository import RecordsRepository

# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.postgres import PostgresContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    PostgresContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    import subprocess

    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = is_docker_available()


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_postgres_infra = pytest.mark.skipif(
    not (TESTCONTAINERS_AVAILABLE and DOCKER_AVAILABLE),
    reason="PostgreSQL test infrastructure not available",
)


# ============================================================================
# PostgreSQL Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    """
    Provide PostgreSQL container for integration tests.

    Container is shared across all tests in the session; each test gets its
    own schema instead.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("PostgreSQL testcontainer not available")

    container = PostgresContainer("postgres:16")
    container.start()

    yield container

    container.stop()


@pytest.fixture(scope="session")
def postgres_connection_url(postgres_container: Any) -> str:
    """Get PostgreSQL connection URL from container."""
    # testcontainers returns psycopg2 URL, convert to asyncpg
    url = postgres_container.get_connection_url()
    return url.replace("postgresql://", "postgresql+asyncpg://").replace("psycopg2", "asyncpg")


@pytest.fixture
async def postgres_engine(postgres_connection_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Provide SQLAlchemy async engine connected to PostgreSQL container."""
    engine = create_async_engine(
        postgres_connection_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
    )

    yield engine

    await engine.dispose()


@pytest.fixture
async def tables(postgres_engine: AsyncEngine) -> AsyncGenerator[RecordsTables, None]:
    """Records tables in a fresh schema, dropped after the test."""
    schema = f"records_{uuid4().hex[:12]}"

    yield RecordsTables(schema=schema)

    async with postgres_engine.begin() as conn:
        await conn.execute(text(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE'))


@pytest.fixture
def make_repository(
    postgres_engine: AsyncEngine,
    tables: RecordsTables,
) -> Callable[..., RecordsRepository]:
    """
    Factory for repositories over the test schema.

    Keyword arguments other than ``flags`` are passed to RecordsRepository.
    Each repository gets in-process metrics only and a MockTracer.
    """

    def factory(flags: RecordsFlags | None = None, **kwargs: Any) -> RecordsRepository:
        settings = RecordsSettings(tables=tables, flags=flags or RecordsFlags())
        database = RecordsDatabase(postgres_engine, tables, bootstrap_schema=True)
        kwargs.setdefault("metrics", RecordsMetrics(enable_metrics=False))
        kwargs.setdefault("tracer", MockTracer())
        return RecordsRepository(database, settings, **kwargs)

    return factory
