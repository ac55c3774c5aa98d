"""
Command-line interface for scheduled shift pipeline runs.
"""

import argparse
import json
import sys
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shift_pipeline.cascade import derive_ingredient_usage
from shift_pipeline.classification import seed_default_classifications
from shift_pipeline.config import settings
from shift_pipeline.db import Base, SessionLocal, engine
from shift_pipeline.errors import PipelineError
from shift_pipeline.log import setup_logging
from shift_pipeline.orchestrator import rebuild, rebuild_range
from shift_pipeline.reconciliation import reconcile
from shift_pipeline.windows import parse_business_date

# registers the tables on Base.metadata for init-db
import shift_pipeline.models  # noqa: F401


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description="Shift Pipeline - per-shift aggregation, ingredient usage and reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  shift-pipeline rebuild --date 2024-03-01
  shift-pipeline rebuild --start 2024-03-01 --end 2024-03-07
  shift-pipeline derive --date 2024-03-01
  shift-pipeline reconcile --date 2024-03-01 --cache
  shift-pipeline check-db
        """,
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--log-file",
        help="Log file path",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
    )

    rebuild_parser = subparsers.add_parser(
        "rebuild",
        help="Rebuild item/modifier aggregates and ingredient usage",
    )
    rebuild_parser.add_argument("--date", help="Business date (YYYY-MM-DD)")
    rebuild_parser.add_argument("--start", help="First business date of a range (YYYY-MM-DD)")
    rebuild_parser.add_argument("--end", help="Last business date of a range, inclusive (YYYY-MM-DD)")
    rebuild_parser.add_argument(
        "--skip-usage",
        action="store_true",
        help="Only rebuild the aggregates, leave ingredient usage untouched",
    )

    derive_parser = subparsers.add_parser(
        "derive",
        help="Derive ingredient usage from existing aggregates",
    )
    derive_parser.add_argument("--date", required=True, help="Business date (YYYY-MM-DD)")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Reconcile staff form, POS report and stock ledger",
    )
    reconcile_parser.add_argument("--date", required=True, help="Business date (YYYY-MM-DD)")
    reconcile_parser.add_argument(
        "--cache",
        action="store_true",
        help="Store the record in shift_reconciliation",
    )

    subparsers.add_parser(
        "check-db",
        help="Check the database connection",
    )

    init_parser = subparsers.add_parser(
        "init-db",
        help="Create missing tables and seed default expense classifications",
    )
    init_parser.add_argument(
        "--no-seed",
        action="store_true",
        help="Do not seed expense classifications",
    )

    return parser


def _print(payload: dict | list) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_rebuild(parsed_args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        if parsed_args.date:
            result = rebuild(
                db,
                parse_business_date(parsed_args.date),
                derive_usage=not parsed_args.skip_usage,
            )
            _print(result.as_dict())
            return 0
        if not (parsed_args.start and parsed_args.end):
            print("rebuild needs --date or both --start and --end", file=sys.stderr)
            return 2
        results = rebuild_range(db, parse_business_date(parsed_args.start), parse_business_date(parsed_args.end))
        _print(results)
        return 0 if all(r["ok"] for r in results) else 1
    finally:
        db.close()


def run_derive(parsed_args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        result = derive_ingredient_usage(db, parse_business_date(parsed_args.date))
    finally:
        db.close()
    _print(
        {
            "success": True,
            "count": result.count,
            "errors": result.errors,
            "unresolved": result.unresolved,
            "coveragePercent": result.coverage_percent,
        }
    )
    return 0


def run_reconcile(parsed_args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        record = reconcile(db, parse_business_date(parsed_args.date), cache=parsed_args.cache)
    finally:
        db.close()
    _print(record.as_dict())
    return 0


def check_db() -> int:
    print(f"DATABASE_URL={settings.database_url}")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return 1
    print("DB connection OK")
    return 0


def init_db(parsed_args: argparse.Namespace) -> int:
    Base.metadata.create_all(bind=engine)
    if parsed_args.no_seed:
        return 0
    db = SessionLocal()
    try:
        added = seed_default_classifications(db)
    finally:
        db.close()
    print(f"seeded {added} expense classifications")
    return 0


def main(args: Optional[list] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        args: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    log_level = "DEBUG" if parsed_args.verbose else None
    logger = setup_logging(level=log_level, log_file=parsed_args.log_file)

    try:
        if parsed_args.command == "rebuild":
            return run_rebuild(parsed_args)
        elif parsed_args.command == "derive":
            return run_derive(parsed_args)
        elif parsed_args.command == "reconcile":
            return run_reconcile(parsed_args)
        elif parsed_args.command == "check-db":
            return check_db()
        elif parsed_args.command == "init-db":
            return init_db(parsed_args)
        else:
            parser.print_help()
            return 1
    except PipelineError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
