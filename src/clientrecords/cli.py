"""
Command line entry point for records maintenance.

Usage:
    clientrecords backfill [--dry-run] [--keep-missing] [--source-row-id N] [--batch-size N]
    clientrecords verify [--source-row-id N] [--max-diff-items N] [--no-fail]

Connection and table settings are read from the environment
(``DATABASE_URL``, ``DB_SCHEMA``, ``DB_TABLE_NAME``,
``DB_CLIENT_RECORDS_V2_TABLE_NAME``, ``DB_STATE_ROW_ID``). Each command
prints a JSON report on stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy.ext.asyncio import create_async_engine

from clientrecords.config import RecordsSettings
from clientrecords.exceptions import RecordsError
from clientrecords.maintenance import (
    DEFAULT_BACKFILL_BATCH_SIZE,
    VERIFY_DEFAULT_MAX_DIFF_ITEMS,
    backfill_records_to_v2,
    verify_records_v2,
)

logger = logging.getLogger(__name__)


def _positive_int(raw_value: str) -> int:
    try:
        value = int(raw_value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {raw_value!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {raw_value!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with the ``backfill`` and ``verify`` commands."""
    parser = argparse.ArgumentParser(
        prog="clientrecords",
        description="Maintain the normalized client records table.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log progress to stderr",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    backfill = subparsers.add_parser(
        "backfill",
        help="Copy the legacy records snapshot into the v2 table",
    )
    backfill.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the changes, then roll back",
    )
    backfill.add_argument(
        "--keep-missing",
        action="store_true",
        help="Don't delete v2 rows whose id is absent from the legacy snapshot",
    )
    backfill.add_argument(
        "--source-row-id",
        type=_positive_int,
        default=None,
        help="Legacy state row to read (default: DB_STATE_ROW_ID or 1)",
    )
    backfill.add_argument(
        "--batch-size",
        type=_positive_int,
        default=DEFAULT_BACKFILL_BATCH_SIZE,
        help=f"Rows per upsert statement (default: {DEFAULT_BACKFILL_BATCH_SIZE})",
    )

    verify = subparsers.add_parser(
        "verify",
        help="Compare the legacy records snapshot with the v2 table",
    )
    verify.add_argument(
        "--source-row-id",
        type=_positive_int,
        default=None,
        help="Legacy state row to read (default: DB_STATE_ROW_ID or 1)",
    )
    verify.add_argument(
        "--max-diff-items",
        type=_positive_int,
        default=VERIFY_DEFAULT_MAX_DIFF_ITEMS,
        help=f"Ids listed per difference category, up to 500 (default: {VERIFY_DEFAULT_MAX_DIFF_ITEMS})",
    )
    verify.add_argument(
        "--no-fail",
        action="store_true",
        help="Exit 0 even when differences are found",
    )
    return parser


async def _run(
    args: argparse.Namespace,
    settings: RecordsSettings,
    database_url: str,
) -> tuple[dict[str, Any], int]:
    tables = settings.tables
    if args.source_row_id is not None:
        tables = tables.with_state_row_id(args.source_row_id)

    engine = create_async_engine(database_url)
    try:
        if args.command == "backfill":
            report = await backfill_records_to_v2(
                engine,
                tables,
                dry_run=args.dry_run,
                delete_missing=not args.keep_missing,
                batch_size=args.batch_size,
            )
            return report.to_dict(), 0

        summary = await verify_records_v2(engine, tables, max_diff_items=args.max_diff_items)
        output = summary.to_dict()
        output["source_row_id"] = tables.state_row_id
        output["table"] = tables.v2_table
        exit_code = 1 if summary.mismatch_detected and not args.no_fail else 0
        return output, exit_code
    finally:
        await engine.dispose()


def main(argv: Sequence[str] | None = None, env: Mapping[str, str] | None = None) -> int:
    """
    Main entry point.

    Args:
        argv: Arguments without the program name (defaults to ``sys.argv``).
        env: Environment to read settings from (defaults to ``os.environ``).

    Returns:
        Process exit code: 0 on success, 1 on failure or verify mismatch,
        2 on configuration errors.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = RecordsSettings.from_env(os.environ if env is None else env)
    except (ValueError, RecordsError) as e:
        print(json.dumps({"ok": False, "error": str(e)}), file=sys.stderr)
        return 2

    database_url = settings.database_url
    if not database_url:
        print(json.dumps({"ok": False, "error": "DATABASE_URL is required"}), file=sys.stderr)
        return 2

    try:
        output, exit_code = asyncio.run(_run(args, settings, database_url))
    except Exception as e:
        logger.exception("%s failed", args.command)
        print(json.dumps({"ok": False, "error": str(e)}), file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2, default=str))
    return exit_code


__all__ = [
    "build_parser",
    "main",
]
