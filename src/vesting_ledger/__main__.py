"""Operator CLI: `python -m vesting_ledger <command>`."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from vesting_ledger.config import Settings, get_settings
from vesting_ledger.errors import VestingLedgerError
from vesting_ledger.pipeline import Pipeline

logger = logging.getLogger("vesting_ledger")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    pipeline = Pipeline(settings, dry_run=args.dry_run or None)
    await pipeline.run()
    return 0


async def _reconcile(args: argparse.Namespace, settings: Settings) -> int:
    pipeline = Pipeline(settings, dry_run=args.dry_run or None)
    await pipeline.initialize()
    try:
        result = await pipeline.reconciliation.run_manually()
    finally:
        await pipeline.close()
    print(
        json.dumps(
            {
                "status": result.status,
                "on_chain_count": result.on_chain_count,
                "db_count": result.db_count,
                "mismatch": result.mismatch,
                "backfilled_count": result.backfilled_count,
                "failed_addresses": list(result.failed_addresses),
            },
            indent=2,
        )
    )
    return 0


async def _rollback(args: argparse.Namespace, settings: Settings) -> int:
    pipeline = Pipeline(settings)
    await pipeline.initialize()
    try:
        result = await pipeline.tracker.rollback_to_ledger(args.to)
    finally:
        await pipeline.close()
    print(
        json.dumps(
            {
                "deleted_claims": result.deleted_claims,
                "deleted_schedules": result.deleted_schedules,
                "new_head": result.new_head,
            },
            indent=2,
        )
    )
    return 0


async def _backfill_prices(args: argparse.Namespace, settings: Settings) -> int:
    pipeline = Pipeline(settings)
    await pipeline.initialize()
    try:
        examined = await pipeline.claims.backfill_missing_prices(args.batch_size)
    finally:
        await pipeline.close()
    print(json.dumps({"claims_examined": examined}))
    return 0


async def _init_db(args: argparse.Namespace, settings: Settings) -> int:
    pipeline = Pipeline(settings)
    await pipeline.initialize()
    try:
        await pipeline.db.init_schema_async()
    finally:
        await pipeline.close()
    return 0


def _show_config(args: argparse.Namespace, settings: Settings) -> int:
    print(json.dumps(settings.redacted_summary(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="vesting_ledger", description="Vesting ledger and reconciliation engine"
    )
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run the indexer, event bus and reconciliation")
    run.add_argument("--dry-run", action="store_true", help="Do not send alerts or write backfills")
    run.set_defaults(handler=_run)

    reconcile = subparsers.add_parser("reconcile", help="Reconcile vault counts once")
    reconcile.add_argument("--dry-run", action="store_true", help="Report without backfilling")
    reconcile.set_defaults(handler=_reconcile)

    rollback = subparsers.add_parser(
        "rollback", help="Roll the ledger cursor back, deleting later claims and top-ups"
    )
    rollback.add_argument("--to", type=int, required=True, help="Target ledger sequence")
    rollback.set_defaults(handler=_rollback)

    backfill = subparsers.add_parser("backfill-prices", help="Price claims stored without a price")
    backfill.add_argument("--batch-size", type=int, default=None, help="Claims per run")
    backfill.set_defaults(handler=_backfill_prices)

    init_db = subparsers.add_parser("init-db", help="Create tables (development only)")
    init_db.set_defaults(handler=_init_db)

    show_config = subparsers.add_parser("show-config", help="Print settings with secrets redacted")
    show_config.set_defaults(handler=_show_config)

    return parser


def main(argv: Any = None) -> int:
    """Program entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "handler"):
        parser.print_help()
        return 0

    settings = get_settings()
    _configure_logging(settings)

    try:
        if args.command in ("run", "reconcile"):
            settings.validate_requirements(command=args.command)
        result = args.handler(args, settings)
        if asyncio.iscoroutine(result):
            return asyncio.run(result)
        return int(result)
    except KeyboardInterrupt:
        return 130
    except (VestingLedgerError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
