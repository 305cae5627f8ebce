"""
Unit tests for schema helpers and the updated_at mode probe.

Database calls are mocked; the DDL itself is covered by the integration
tests.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from clientrecords.config import RecordsTables
from clientrecords.stores.schema import (
    UpdatedAtMode,
    UpdatedAtModeProbe,
    build_safe_index_name,
    ensure_records_schema,
    parse_qualified_table_name,
)


def _mock_connection(udt_name: str | None = None, error: Exception | None = None) -> MagicMock:
    """Connection whose probe query returns ``udt_name`` (or raises ``error``)."""
    conn = MagicMock()
    nested = MagicMock()
    nested.__aenter__ = AsyncMock(return_value=None)
    nested.__aexit__ = AsyncMock(return_value=False)
    conn.begin_nested.return_value = nested

    result = MagicMock()
    result.fetchone.return_value = (udt_name,) if udt_name is not None else None
    conn.execute = AsyncMock(side_effect=error, return_value=result)
    return conn


class TestParseQualifiedTableName:
    """Tests for parse_qualified_table_name."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ('"crm"."state"', ("crm", "state")),
            ("crm.state", ("crm", "state")),
            ('"state"', ("public", "state")),
            ("state", ("public", "state")),
            ("  state  ", ("public", "state")),
        ],
    )
    def test_accepted_forms(self, raw, expected):
        assert parse_qualified_table_name(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "a.b.c", "1state", "st ate", '"crm".state'])
    def test_rejected_forms(self, raw):
        assert parse_qualified_table_name(raw) is None


class TestBuildSafeIndexName:
    """Tests for build_safe_index_name."""

    def test_short_name_is_kept(self):
        assert build_safe_index_name("client_records_v2_created_at_idx") == (
            "client_records_v2_created_at_idx"
        )

    def test_normalizes_characters(self):
        assert build_safe_index_name("My-Index Name") == "my_index_name"

    def test_long_names_fit_and_stay_distinct(self):
        first = build_safe_index_name("x" * 80 + "_created_at_idx")
        second = build_safe_index_name("x" * 80 + "_updated_at_idx")
        assert len(first) == 63
        assert len(second) == 63
        assert first != second


class TestUpdatedAtModeProbe:
    """Tests for UpdatedAtModeProbe."""

    @pytest.mark.asyncio
    async def test_bigint_column(self):
        probe = UpdatedAtModeProbe(RecordsTables())
        assert await probe.resolve(_mock_connection("int8")) is UpdatedAtMode.BIGINT
        assert probe.cached_mode is UpdatedAtMode.BIGINT

    @pytest.mark.asyncio
    async def test_timestamptz_column(self):
        probe = UpdatedAtModeProbe(RecordsTables())
        assert await probe.resolve(_mock_connection("timestamptz")) is UpdatedAtMode.TIMESTAMPTZ

    @pytest.mark.asyncio
    async def test_missing_table_defaults_to_timestamptz(self):
        probe = UpdatedAtModeProbe(RecordsTables())
        assert await probe.resolve(_mock_connection(None)) is UpdatedAtMode.TIMESTAMPTZ

    @pytest.mark.asyncio
    async def test_failed_probe_falls_back_and_memoizes(self, caplog):
        probe = UpdatedAtModeProbe(RecordsTables())
        conn = _mock_connection(error=RuntimeError("permission denied"))

        assert await probe.resolve(conn) is UpdatedAtMode.TIMESTAMPTZ
        assert await probe.resolve(conn) is UpdatedAtMode.TIMESTAMPTZ
        assert conn.execute.await_count == 1
        assert "falling back to timestamptz" in caplog.text

    @pytest.mark.asyncio
    async def test_probes_once_under_concurrency(self):
        probe = UpdatedAtModeProbe(RecordsTables())
        conn = _mock_connection("int8")

        modes = await asyncio.gather(*(probe.resolve(conn) for _ in range(5)))

        assert set(modes) == {UpdatedAtMode.BIGINT}
        assert conn.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_reset_probes_again(self):
        probe = UpdatedAtModeProbe(RecordsTables())
        conn = _mock_connection("int8")
        await probe.resolve(conn)

        probe.reset()

        assert probe.cached_mode is None
        await probe.resolve(conn)
        assert conn.execute.await_count == 2


class TestEnsureRecordsSchema:
    """Tests for ensure_records_schema statement generation."""

    @pytest.mark.asyncio
    async def test_uses_configured_tables(self):
        conn = MagicMock()
        conn.execute = AsyncMock()
        tables = RecordsTables(schema="crm", state_table_name="state", v2_table_name="rows_v2")

        await ensure_records_schema(conn, tables)

        statements = [str(call.args[0]) for call in conn.execute.await_args_list]
        assert 'CREATE SCHEMA IF NOT EXISTS "crm"' in statements[0]
        assert any('CREATE TABLE IF NOT EXISTS "crm"."state"' in sql for sql in statements)
        assert any('CREATE TABLE IF NOT EXISTS "crm"."rows_v2"' in sql for sql in statements)
        assert any("ADD COLUMN IF NOT EXISTS write_timestamp" in sql for sql in statements)
        assert any('"rows_v2_record_gin_idx"' in sql for sql in statements)
