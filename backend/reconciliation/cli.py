"""
Reconciliation command line.

    recon-engine match [--source SRC ...] [--apply] [--sample N]
    recon-engine ledger-codes [--source SRC ...] [--apply]
    recon-engine classify-bank [--apply]
    recon-engine disbursements [--apply]
    recon-engine repair --extract PATH [--source SRC ...] [--apply]
    recon-engine sweep [--max-days N] [--apply]

Every command previews by default and writes only with --apply.
Reports go to stdout as JSON; logs go to stderr.

Exit codes: 0 done (including nothing to do), 1 backing store failure,
2 configuration failure, 3 writer lease held by another run.
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from config import ConfigurationError, Settings, get_settings
from database.connection import dispose_engine, get_session_factory
from logging_config import clear_run_context, set_run_context, setup_logging
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.repair_service import ExtractLayout, RepairService, load_ledger_extract
from reconciliation.services.repository import LeaseUnavailableError, RepositoryError
from reconciliation.source_registry import source_registry
from sentry_integration import init_sentry, set_run_tags

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FETCH_FAILED = 1
EXIT_CONFIG = 2
EXIT_LEASE_HELD = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recon-engine",
        description="Transaction reconciliation and repair engine",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--apply", action="store_true", help="Write results (default is a dry run)")
    common.add_argument("--sample", type=int, default=None, help="Rows shown in the report sample")

    with_sources = argparse.ArgumentParser(add_help=False)
    with_sources.add_argument(
        "--source", dest="sources", action="append", default=None,
        help="Restrict to a source; repeat for several",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("match", parents=[common, with_sources], help="Match transactions to invoices")
    sub.add_parser("ledger-codes", parents=[common, with_sources], help="Backfill ledger codes on gateway rows")
    sub.add_parser("classify-bank", parents=[common], help="Code bank inflows from the payer name")
    sub.add_parser("disbursements", parents=[common], help="Match bank inflows to gateway payouts")

    repair = sub.add_parser("repair", parents=[common, with_sources], help="Correct amounts from a ledger extract")
    repair.add_argument("--extract", required=True, help="Path to the ;-separated ledger extract")

    sweep = sub.add_parser("sweep", parents=[common], help="Reset false-positive bank matches")
    sweep.add_argument("--max-days", type=int, default=None, help="Maximum bank/disbursement gap")
    return parser


@asynccontextmanager
async def open_services(settings: Settings):
    """Reader session plus both services; the engine is disposed on exit."""
    factory = get_session_factory()
    try:
        async with factory() as db:
            yield (
                ReconciliationService(db, session_factory=factory, settings=settings),
                RepairService(db, session_factory=factory, settings=settings),
            )
    finally:
        await dispose_engine()


async def run_command(args: argparse.Namespace, settings: Settings):
    """Execute one subcommand and return its report."""
    dry_run = not args.apply

    extract = None
    if args.command == "repair":
        extract = load_ledger_extract(args.extract, ExtractLayout.from_settings(settings))

    async with open_services(settings) as (reconciliation, repair):
        if args.command == "match":
            return await reconciliation.run_matching(sources=args.sources, dry_run=dry_run)
        if args.command == "ledger-codes":
            return await reconciliation.run_ledger_codes(sources=args.sources, dry_run=dry_run)
        if args.command == "classify-bank":
            return await reconciliation.classify_bank_inflows(dry_run=dry_run)
        if args.command == "disbursements":
            return await reconciliation.run_disbursements(dry_run=dry_run)
        if args.command == "repair":
            return await repair.run_repair(extract, sources=args.sources, dry_run=dry_run)
        if args.command == "sweep":
            return await repair.sweep_false_positives(dry_run=dry_run, max_days=args.max_days)
    raise ValueError(f"Unknown command: {args.command}")


def render(command: str, dry_run: bool, report: dict) -> str:
    mode = "DRY RUN (no writes, use --apply)" if dry_run else "APPLY"
    return f"== {command}: {mode} ==\n{json.dumps(report, indent=2, default=str)}"


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    unknown = [s for s in (getattr(args, "sources", None) or []) if source_registry.get_config(s) is None]
    if unknown:
        parser.error(f"unknown source(s): {', '.join(unknown)}")

    try:
        settings = get_settings()
        settings.get_database_url()
    except (ConfigurationError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(level=settings.LOG_LEVEL, json_format=settings.json_logs)
    init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    dry_run = not args.apply
    sample = settings.SAMPLE_SIZE if args.sample is None else max(0, args.sample)
    set_run_context(command=args.command, dry_run=dry_run)
    set_run_tags(args.command, dry_run)

    try:
        report = asyncio.run(run_command(args, settings))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except FileNotFoundError as e:
        logger.error(f"Extract not found: {e}")
        return EXIT_CONFIG
    except LeaseUnavailableError as e:
        logger.error(str(e))
        return EXIT_LEASE_HELD
    except (RepositoryError, SQLAlchemyError, OSError) as e:
        logger.error(f"{args.command} aborted: {e}")
        return EXIT_FETCH_FAILED
    finally:
        clear_run_context()

    print(render(args.command, dry_run, report.to_dict(sample)))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
