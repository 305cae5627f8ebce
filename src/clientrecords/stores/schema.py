"""
Schema bootstrap and probing for the records tables.

The legacy table predates this package and may store ``updated_at`` as a
``timestamptz`` or as a ``bigint`` of epoch milliseconds. The column type is
probed once per repository and memoized by UpdatedAtModeProbe.

Tables created here:

    <state_table> (
        id BIGINT PRIMARY KEY,
        records JSONB NOT NULL DEFAULT '[]',
        updated_at TIMESTAMPTZ
    )

    <v2_table> (
        id TEXT PRIMARY KEY,
        record JSONB NOT NULL,
        record_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ,
        source_state_updated_at TIMESTAMPTZ,
        source_state_row_id BIGINT NOT NULL DEFAULT 1,
        inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        write_timestamp TIMESTAMPTZ
    )
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from clientrecords.snapshot import DEFAULT_SOURCE_STATE_ROW_ID

if TYPE_CHECKING:
    from clientrecords.config import RecordsTables

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 63

_QUOTED_QUALIFIED = re.compile(r'^"([^"]+)"\."([^"]+)"$')
_PLAIN_QUALIFIED = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_]*)$")
_QUOTED_TABLE = re.compile(r'^"([^"]+)"$')
_PLAIN_TABLE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)$")


class UpdatedAtMode(Enum):
    """Storage type of the legacy ``updated_at`` column."""

    TIMESTAMPTZ = "timestamptz"
    BIGINT = "bigint"


def parse_qualified_table_name(raw_value: str | None) -> tuple[str, str] | None:
    """
    Split a possibly-qualified table name into ``(schema, table)``.

    Accepts ``"schema"."table"``, ``schema.table``, ``"table"`` and
    ``table``. Unqualified names resolve to the ``public`` schema.

    Args:
        raw_value: The table name as configured.

    Returns:
        ``(schema, table)``, or None when the value matches none of the
        accepted forms.

    Example:
        >>> parse_qualified_table_name('"crm"."client_records_state"')
        ('crm', 'client_records_state')
        >>> parse_qualified_table_name("client_records_state")
        ('public', 'client_records_state')
    """
    value = (raw_value or "").strip()[:240]
    if not value:
        return None

    for pattern in (_QUOTED_QUALIFIED, _PLAIN_QUALIFIED):
        match = pattern.match(value)
        if match:
            return match.group(1)[:120], match.group(2)[:120]

    for pattern in (_QUOTED_TABLE, _PLAIN_TABLE):
        match = pattern.match(value)
        if match:
            return "public", match.group(1)[:120]

    return None


def build_safe_index_name(base_name: str) -> str:
    """
    Build an index name that fits PostgreSQL's identifier limit.

    Names longer than 63 characters are truncated and suffixed with a short
    hash of the full name, so distinct long names stay distinct.
    """
    normalized = re.sub(r"[^a-z0-9_]+", "_", base_name.strip()[:300].lower()) or "idx"
    if len(normalized) <= MAX_IDENTIFIER_LENGTH:
        return normalized
    digest = hashlib.sha1(normalized.encode()).hexdigest()[:8]
    return f"{normalized[: MAX_IDENTIFIER_LENGTH - len(digest) - 1]}_{digest}"


class UpdatedAtModeProbe:
    """
    Lazily probed, memoized storage mode of the legacy ``updated_at`` column.

    The probe runs at most once until ``reset()`` is called. Concurrent
    first callers wait on the same lock instead of probing in parallel.

    Example:
        >>> probe = UpdatedAtModeProbe(tables)
        >>> mode = await probe.resolve(conn)
    """

    def __init__(self, tables: RecordsTables) -> None:
        self._tables = tables
        self._mode: UpdatedAtMode | None = None
        self._lock = asyncio.Lock()

    @property
    def cached_mode(self) -> UpdatedAtMode | None:
        return self._mode

    async def resolve(self, conn: AsyncConnection) -> UpdatedAtMode:
        """
        Return the column mode, probing on first use.

        A failed probe logs a warning and memoizes TIMESTAMPTZ.

        Args:
            conn: Connection to probe on.

        Returns:
            The resolved mode.
        """
        if self._mode is not None:
            return self._mode

        async with self._lock:
            if self._mode is None:
                self._mode = await self._probe(conn)
            return self._mode

    async def _probe(self, conn: AsyncConnection) -> UpdatedAtMode:
        try:
            # Savepoint so a failed probe does not abort the caller's transaction
            async with conn.begin_nested():
                result = await conn.execute(
                    text(
                        """
                        SELECT udt_name
                        FROM information_schema.columns
                        WHERE table_schema = :schema
                          AND table_name = :table
                          AND column_name = 'updated_at'
                        LIMIT 1
                        """
                    ),
                    {"schema": self._tables.schema, "table": self._tables.state_table_name},
                )
                row = result.fetchone()
        except Exception as e:
            logger.warning(
                "Failed to resolve %s.updated_at type, falling back to timestamptz: %s",
                self._tables.state_table,
                e,
            )
            return UpdatedAtMode.TIMESTAMPTZ

        udt_name = str(row[0]).strip().lower() if row is not None and row[0] else ""
        mode = UpdatedAtMode.BIGINT if udt_name == "int8" else UpdatedAtMode.TIMESTAMPTZ
        logger.debug("Resolved %s.updated_at mode: %s", self._tables.state_table, mode.value)
        return mode

    def reset(self) -> None:
        """Forget the memoized mode; the next resolve() probes again."""
        self._mode = None


async def ensure_records_schema(conn: AsyncConnection, tables: RecordsTables) -> None:
    """
    Create or upgrade the records tables and indexes.

    Idempotent. The legacy table is only created when missing; existing
    legacy tables (including ``bigint`` revision columns) are left as they
    are. Columns added to the v2 table over time are back-filled with
    ``ADD COLUMN IF NOT EXISTS``.

    Args:
        conn: Connection inside a transaction.
        tables: Table locations.
    """
    state_table = tables.state_table
    v2_table = tables.v2_table

    await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{tables.schema}"'))

    await conn.execute(
        text(
            f"""
            CREATE TABLE IF NOT EXISTS {state_table} (
                id BIGINT PRIMARY KEY,
                records JSONB NOT NULL DEFAULT '[]'::jsonb,
                updated_at TIMESTAMPTZ
            )
            """
        )
    )

    await conn.execute(
        text(
            f"""
            CREATE TABLE IF NOT EXISTS {v2_table} (
                id TEXT PRIMARY KEY,
                record JSONB NOT NULL,
                record_hash TEXT NOT NULL,
                created_at TIMESTAMPTZ,
                source_state_updated_at TIMESTAMPTZ,
                source_state_row_id BIGINT NOT NULL DEFAULT {DEFAULT_SOURCE_STATE_ROW_ID},
                inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                write_timestamp TIMESTAMPTZ
            )
            """
        )
    )

    column_definitions = [
        "record_hash TEXT NOT NULL DEFAULT ''",
        "created_at TIMESTAMPTZ",
        "source_state_updated_at TIMESTAMPTZ",
        f"source_state_row_id BIGINT NOT NULL DEFAULT {DEFAULT_SOURCE_STATE_ROW_ID}",
        "inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW()",
        "updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()",
        "write_timestamp TIMESTAMPTZ",
    ]
    for definition in column_definitions:
        await conn.execute(text(f"ALTER TABLE {v2_table} ADD COLUMN IF NOT EXISTS {definition}"))

    table_name = tables.v2_table_name
    indexes = [
        (f"{table_name}_source_state_row_id_id_idx", "(source_state_row_id, id)"),
        (f"{table_name}_created_at_idx", "(created_at DESC NULLS LAST)"),
        (f"{table_name}_updated_at_idx", "(updated_at DESC)"),
        (f"{table_name}_source_state_updated_at_idx", "(source_state_updated_at DESC NULLS LAST)"),
        (f"{table_name}_record_gin_idx", "USING GIN (record)"),
    ]
    for base_name, expression in indexes:
        index_name = build_safe_index_name(base_name)
        await conn.execute(
            text(f'CREATE INDEX IF NOT EXISTS "{index_name}" ON {v2_table} {expression}')
        )

    logger.info("Ensured records schema: %s, %s", state_table, v2_table)


__all__ = [
    "UpdatedAtMode",
    "UpdatedAtModeProbe",
    "build_safe_index_name",
    "ensure_records_schema",
    "parse_qualified_table_name",
]
