"""
main.py
--------
Entry point for the Statement Reconciliation Engine.

Imports parsed bank statements, seeds the default detection rules, runs the
retention sweep and lists a user's import sessions.

Usage (from the project root):
    python main.py seed-rules
    python main.py import --user alice --input statement.csv
    python main.py import --user alice --input statement.csv --accept-all
    python main.py sessions --user alice
    python main.py sweep

    # Point at another database:
    python main.py --database-url sqlite:///other.db sessions --user alice
"""

import sys
import os
import argparse
import logging
from datetime import datetime

import pandas as pd

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from config.config_loader import get_logging_config
from core.confirmation import ConfirmationHandler, InMemoryRecordStore
from core.errors import ReconciliationError
from core.rule_resolver import RuleResolver
from core.session_lifecycle import SessionLifecycleManager
from core.statement_parser import CsvStatementParser
from pipeline import ReconciliationPipeline, suggestions_to_frame
from storage.db import setup_database
from storage.queries import list_sessions, session_suggestions


# =============================================================================
# LOGGING SETUP
# =============================================================================

_logging_config = get_logging_config()
logging.basicConfig(
    level=getattr(logging, str(_logging_config.get("level", "INFO")).upper(), logging.INFO),
    format=_logging_config.get("format", "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"),
    datefmt=_logging_config.get("datefmt", "%Y-%m-%d %H:%M:%S"),
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Statement Reconciliation Engine: detect recurring bills in bank statements."
    )
    parser.add_argument(
        "--database-url", type=str, default=None,
        help="SQLAlchemy database URL. Defaults to RECON_DATABASE_URL or config.yaml."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    import_cmd = commands.add_parser("import", help="Import a parsed statement CSV for a user.")
    import_cmd.add_argument("--user", type=str, required=True, help="Owning user id.")
    import_cmd.add_argument("--input", type=str, required=True, help="Path to the statement CSV.")
    import_cmd.add_argument("--bank", type=str, default=None, help="Bank name to record on the session.")
    import_cmd.add_argument("--account", type=str, default=None, help="Account number to record on the session.")
    import_cmd.add_argument(
        "--monthfirst", action="store_true", default=False,
        help="Read ambiguous dates as MM/DD/YYYY. Default is DD/MM/YYYY."
    )
    import_cmd.add_argument(
        "--no-history", action="store_true", default=False,
        help="Group only this statement's lines, not the user's recent history."
    )
    import_cmd.add_argument(
        "--accept-all", action="store_true", default=False,
        help="Accept every suggestion into an in-memory record store (dry run of confirmation)."
    )
    import_cmd.add_argument(
        "--output-dir", type=str, default=None,
        help="Also write the suggestions to a CSV in this directory."
    )

    commands.add_parser("seed-rules", help="Seed the default detection rule set if missing.")

    sweep_cmd = commands.add_parser("sweep", help="Expire and purge sessions past retention.")
    sweep_cmd.add_argument(
        "--now", type=str, default=None,
        help="Pretend it is this ISO timestamp (for testing retention)."
    )

    sessions_cmd = commands.add_parser("sessions", help="List a user's import sessions.")
    sessions_cmd.add_argument("--user", type=str, required=True, help="Owning user id.")
    sessions_cmd.add_argument("--status", type=str, default=None, help="Only sessions in this status.")
    sessions_cmd.add_argument("--limit", type=int, default=20, help="Page size. Default: 20.")
    sessions_cmd.add_argument("--offset", type=int, default=0, help="Rows to skip. Default: 0.")

    return parser.parse_args(argv)


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_import(args: argparse.Namespace, session_factory) -> int:
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        return 1

    RuleResolver(session_factory).seed_default_rules()

    parser = CsvStatementParser(bank_name=args.bank, account_number=args.account, dayfirst=not args.monthfirst)
    pipeline = ReconciliationPipeline(
        session_factory, parser=parser, include_history=False if args.no_history else None,
    )
    result = pipeline.run(args.user, args.input)

    for error in result.ingest.errors:
        logger.warning(f"Line {error.line_number} skipped: {error.message}")

    suggestions = result.suggestions
    if args.accept_all:
        store = InMemoryRecordStore()
        summary = ConfirmationHandler(session_factory, store).accept_all(args.user, result.session.id)
        logger.info(f"Accepted {len(summary.created_records):,} suggestions into the in-memory record store.")
        with session_factory() as db:
            suggestions = session_suggestions(db, result.session.id)

    df = suggestions_to_frame(suggestions)

    if args.output_dir:
        os.makedirs(args.output_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        out_path = os.path.join(args.output_dir, f"suggestions_{timestamp}.csv")
        df.to_csv(out_path, index=False)
        logger.info(f"Suggestions saved to: {out_path}")

    session = SessionLifecycleManager(session_factory).get_session(result.session.id)
    _print_summary(session, df)
    return 0


def cmd_seed_rules(args: argparse.Namespace, session_factory) -> int:
    rule_set = RuleResolver(session_factory).seed_default_rules()
    total = sum(1 for _ in rule_set.active_rules())
    print(f"\n  Default rule set: {rule_set.name} (v{rule_set.version}), {total} active rules.\n")
    return 0


def cmd_sweep(args: argparse.Namespace, session_factory) -> int:
    now = datetime.fromisoformat(args.now) if args.now else None
    counts = SessionLifecycleManager(session_factory).sweep_expired(now)
    print(f"\n  Retention sweep: {counts['expired']} expired, {counts['purged']} purged.\n")
    return 0


def cmd_sessions(args: argparse.Namespace, session_factory) -> int:
    with session_factory() as db:
        rows = list_sessions(db, args.user, status=args.status, limit=args.limit, offset=args.offset)

    if not rows:
        print("\n  No import sessions to display.\n")
        return 0

    print("\n" + "=" * 80)
    print(f"  IMPORT SESSIONS FOR {args.user}")
    print("=" * 80)
    for row in rows:
        stats = row.statistics
        print(
            f"    {row.created_at:%Y-%m-%d %H:%M}  {row.status.value:10s}  {row.filename[:28]:28s}  "
            f"{stats.total_transactions:>4} new  {stats.recurring_detected:>3} recurring  {row.id}"
        )
    print("=" * 80 + "\n")
    return 0


COMMANDS = {
    "import": cmd_import,
    "seed-rules": cmd_seed_rules,
    "sweep": cmd_sweep,
    "sessions": cmd_sessions,
}


# =============================================================================
# MAIN
# =============================================================================

def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    logger.info("Initializing database...")
    session_factory = setup_database(args.database_url)

    try:
        return COMMANDS[args.command](args, session_factory)
    except ReconciliationError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1


def _print_summary(session, df: pd.DataFrame):
    """Prints a clean summary table to the console."""
    stats = session.statistics

    print("\n" + "=" * 80)
    print("  STATEMENT IMPORT SUMMARY")
    print("=" * 80)
    print(f"\n  Session {session.id}  ({session.status.value})")
    print("  " + "-" * 60)
    print(f"    New transactions:        {stats.total_transactions:>6,}")
    print(f"    Duplicate transactions:  {stats.duplicate_transactions:>6,}")
    print(f"    Total debits:            {stats.total_debits:>12,.2f}")
    print(f"    Total credits:           {stats.total_credits:>12,.2f}")
    print(f"    Date range (days):       {stats.date_range_days:>6,}")
    print(f"    Records created:         {stats.records_created:>6,}")

    if df.empty:
        print("\n  No recurring payments detected.")
        print("=" * 80 + "\n")
        return

    # Suggestions
    print(f"\n  Recurring Payments ({len(df):,}):")
    print("  " + "-" * 60)
    for row in df.itertuples(index=False):
        print(
            f"    [{row.suggestion_index:>2}] {row.payee[:24]:24s} {row.amount:>10,.2f}  "
            f"{row.frequency:10s} conf {row.confidence:.2f}  {row.status}"
        )

    print(f"\n  Frequency Mix:")
    print("  " + "-" * 60)
    for frequency, count in df["frequency"].value_counts().items():
        pct = count / len(df) * 100
        print(f"    {frequency:10s}  {count:>5,}  ({pct:.1f}%)")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    sys.exit(main())
