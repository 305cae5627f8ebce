"""
Unit tests for the maintenance command line.

The maintenance functions and the engine factory are patched, so these
tests cover argument parsing, settings handling, exit codes and output.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from clientrecords.cli import _run, build_parser, main
from clientrecords.config import RecordsSettings
from clientrecords.maintenance import BackfillReport
from clientrecords.models import DualReadCompareSummary

ENV = {"DATABASE_URL": "postgres://u:p@localhost/db"}


def _report(**overrides) -> BackfillReport:
    values = {
        "dry_run": False,
        "delete_missing": True,
        "source_row_id": 1,
        "batch_size": 300,
        "batch_count": 1,
        "source_state_updated_at": "2024-05-01T10:00:00.123Z",
        "legacy_record_count_raw": 3,
        "legacy_record_count_normalized": 2,
        "v2_record_count": 2,
        "inserted_count": 1,
        "updated_count": 1,
        "unchanged_count": 0,
        "deleted_count": 0,
        "skipped_invalid_record_count": 1,
        "skipped_missing_id_count": 0,
        "duplicate_id_count": 0,
        "legacy_checksum": "abc",
        "table": '"public"."client_records_v2"',
    }
    values.update(overrides)
    return BackfillReport(**values)


@pytest.fixture
def engine():
    """Patch the engine factory with a mock whose dispose() is awaitable."""
    mock_engine = MagicMock()
    mock_engine.dispose = AsyncMock()
    with patch("clientrecords.cli.create_async_engine", return_value=mock_engine) as factory:
        yield factory


class TestBuildParser:
    """Tests for argument parsing."""

    def test_backfill_defaults(self):
        args = build_parser().parse_args(["backfill"])
        assert args.command == "backfill"
        assert not args.dry_run
        assert not args.keep_missing
        assert args.source_row_id is None

    def test_verify_options(self):
        args = build_parser().parse_args(
            ["verify", "--source-row-id", "2", "--max-diff-items", "10", "--no-fail"]
        )
        assert args.source_row_id == 2
        assert args.max_diff_items == 10
        assert args.no_fail

    @pytest.mark.parametrize("value", ["0", "-1", "abc"])
    def test_source_row_id_must_be_positive(self, value):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["backfill", "--source-row-id", value])

    def test_batch_size(self):
        assert build_parser().parse_args(["backfill"]).batch_size == 300
        assert build_parser().parse_args(["backfill", "--batch-size", "25"]).batch_size == 25

    @pytest.mark.parametrize("value", ["0", "-5", "ten"])
    def test_batch_size_must_be_positive(self, value):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["backfill", "--batch-size", value])

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestBackfillCommand:
    """Tests for ``clientrecords backfill``."""

    def test_prints_report(self, engine, capsys):
        backfill = AsyncMock(return_value=_report())
        with patch("clientrecords.cli.backfill_records_to_v2", backfill):
            exit_code = main(["backfill"], env=ENV)

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["ok"] is True
        assert output["inserted_count"] == 1
        engine.assert_called_once_with("postgresql+asyncpg://u:p@localhost/db")
        engine.return_value.dispose.assert_awaited_once()

    def test_passes_flags(self, engine):
        backfill = AsyncMock(return_value=_report(dry_run=True, delete_missing=False))
        with patch("clientrecords.cli.backfill_records_to_v2", backfill):
            main(["backfill", "--dry-run", "--keep-missing", "--source-row-id", "4"], env=ENV)

        tables = backfill.await_args.args[1]
        assert tables.state_row_id == 4
        assert backfill.await_args.kwargs == {
            "dry_run": True,
            "delete_missing": False,
            "batch_size": 300,
        }

    def test_passes_batch_size(self, engine, capsys):
        backfill = AsyncMock(return_value=_report(batch_size=50, batch_count=3))
        with patch("clientrecords.cli.backfill_records_to_v2", backfill):
            main(["backfill", "--batch-size", "50"], env=ENV)

        assert backfill.await_args.kwargs["batch_size"] == 50
        output = json.loads(capsys.readouterr().out)
        assert output["batch_size"] == 50
        assert output["batch_count"] == 3

    def test_reads_legacy_table_name(self, engine):
        backfill = AsyncMock(return_value=_report())
        with patch("clientrecords.cli.backfill_records_to_v2", backfill):
            main(["backfill"], env={**ENV, "DB_TABLE_NAME": "legacy_state"})

        tables = backfill.await_args.args[1]
        assert tables.state_table_name == "legacy_state"

    def test_failure_exits_1(self, engine, capsys):
        backfill = AsyncMock(side_effect=RuntimeError("connection refused"))
        with patch("clientrecords.cli.backfill_records_to_v2", backfill):
            exit_code = main(["backfill"], env=ENV)

        assert exit_code == 1
        assert "connection refused" in capsys.readouterr().err
        engine.return_value.dispose.assert_awaited_once()


class TestVerifyCommand:
    """Tests for ``clientrecords verify``."""

    def test_match_exits_0(self, engine, capsys):
        summary = DualReadCompareSummary(source="verify", legacy_count=2, v2_count=2)
        with patch("clientrecords.cli.verify_records_v2", AsyncMock(return_value=summary)):
            exit_code = main(["verify"], env=ENV)

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["ok"] is True
        assert output["source_row_id"] == 1

    def test_mismatch_exits_1(self, engine, capsys):
        summary = DualReadCompareSummary(
            source="verify", legacy_count=2, v2_count=1, missing_in_v2_count=1, missing_in_v2=["a"]
        )
        with patch("clientrecords.cli.verify_records_v2", AsyncMock(return_value=summary)):
            exit_code = main(["verify"], env=ENV)

        assert exit_code == 1
        assert json.loads(capsys.readouterr().out)["missing_in_v2"] == ["a"]

    def test_mismatch_with_no_fail(self, engine):
        summary = DualReadCompareSummary(source="verify", legacy_count=2, v2_count=1)
        with patch("clientrecords.cli.verify_records_v2", AsyncMock(return_value=summary)):
            assert main(["verify", "--no-fail"], env=ENV) == 0

    def test_max_diff_items_is_passed(self, engine):
        verify = AsyncMock(return_value=DualReadCompareSummary(source="verify"))
        with patch("clientrecords.cli.verify_records_v2", verify):
            main(["verify", "--max-diff-items", "7"], env=ENV)

        assert verify.await_args.kwargs["max_diff_items"] == 7


class TestConfigurationErrors:
    """Tests for environment problems."""

    def test_missing_database_url(self, capsys):
        assert main(["verify"], env={}) == 2
        assert "DATABASE_URL" in capsys.readouterr().err

    def test_invalid_table_name(self, capsys):
        env = {**ENV, "DB_TABLE_NAME": "a.b.c"}
        assert main(["backfill"], env=env) == 2
        assert "DB_TABLE_NAME" in capsys.readouterr().err


class TestRun:
    """Tests for the async command runner."""

    @pytest.mark.asyncio
    async def test_run_uses_the_given_url(self, engine):
        args = build_parser().parse_args(["backfill"])
        settings = RecordsSettings()

        with patch("clientrecords.cli.backfill_records_to_v2", AsyncMock(return_value=_report())):
            output, exit_code = await _run(args, settings, "postgresql+asyncpg://u:p@db/records")

        assert exit_code == 0
        assert output["ok"] is True
        engine.assert_called_once_with("postgresql+asyncpg://u:p@db/records")
