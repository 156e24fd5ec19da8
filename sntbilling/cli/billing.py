"""CLI entry point for billing operations.

Usage:
    python -m sntbilling.cli.billing init-db
    python -m sntbilling.cli.billing import statement.csv [--override-reason TEXT]
    python -m sntbilling.cli.billing reconcile PERIOD_ID [--update-accrual-paid] [--include-zero]
    python -m sntbilling.cli.billing apply-penalty --as-of 2025-04-01 [--rate 0.1]
    python -m sntbilling.cli.billing recalc-penalties --as-of 2025-04-01 [--plot 3 --plot 7]
    python -m sntbilling.cli.billing debtors [--period PERIOD_ID]

Exit Codes:
    0 - Success
    1 - Failure: operation rejected (closed period, unknown id, bad input)
    2 - Partial: import finished with row errors

Logging:
    Level from BILLING_LOG_LEVEL, output to stdout and BILLING_LOG_FILE
"""

import argparse
import logging
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path

from dotenv import load_dotenv

from sntbilling.services import create_db_engine, create_schema, create_session_factory
from sntbilling.services.config import get_settings
from sntbilling.services.debtor_service import DebtorAggregationService
from sntbilling.services.errors import BillingError
from sntbilling.services.logging import setup_logging
from sntbilling.services.payment_service import PaymentLedgerService
from sntbilling.services.penalty_service import PenaltyService
from sntbilling.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got '{value}'") from e


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value.replace(",", "."))
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"expected a number, got '{value}'") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sntbilling", description="SNT billing engine")
    parser.add_argument("--database-url", default=None, help="Override BILLING_DATABASE_URL")
    parser.add_argument("--actor", default=None, help="Operator id recorded in the audit log")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create missing tables")

    imp = commands.add_parser("import", help="Import a bank statement CSV")
    imp.add_argument("file", type=Path)
    imp.add_argument("--encoding", default="utf-8")
    imp.add_argument("--override-reason", default=None)

    rec = commands.add_parser("reconcile", help="Reconcile a billing period")
    rec.add_argument("period_id", type=int)
    rec.add_argument("--update-accrual-paid", action="store_true")
    rec.add_argument("--include-zero", action="store_true")
    rec.add_argument("--override-reason", default=None)

    for name in ("apply-penalty", "recalc-penalties"):
        pen = commands.add_parser(name, help=f"{name.replace('-', ' ').capitalize()} as of a date")
        pen.add_argument("--as-of", type=_date, required=True)
        pen.add_argument("--rate", type=_decimal, default=None, help="Annual rate, 0.1 = 10%%")
        pen.add_argument("--min-penalty", type=_decimal, default=None)
        pen.add_argument("--include-voided", action="store_true")
        pen.add_argument("--override-reason", default=None)

    commands.choices["apply-penalty"].add_argument("--date-from", type=_date, default=None)
    commands.choices["apply-penalty"].add_argument("--date-to", type=_date, default=None)
    commands.choices["recalc-penalties"].add_argument("--plot", type=int, action="append", dest="plot_ids")
    commands.choices["recalc-penalties"].add_argument("--limit", type=int, default=None)

    deb = commands.add_parser("debtors", help="List debtors by person")
    deb.add_argument("--period", type=int, default=None, dest="period_id")
    deb.add_argument("--as-of", type=_date, default=None)
    return parser


def run_import(db, args) -> int:
    content = args.file.read_text(encoding=args.encoding)
    result = PaymentLedgerService(db).import_statement_csv(
        content,
        file_name=args.file.name,
        actor_id=args.actor,
        override_reason=args.override_reason,
    )
    for error in result.errors:
        logger.error("Row %d [%s]: %s", error.row_number, error.code, error.message)
    logger.info(
        "Import #%s: inserted=%d skipped=%d matched=%d unmatched=%d errors=%d",
        result.import_id,
        result.inserted,
        result.skipped,
        result.matched,
        result.unmatched,
        len(result.errors),
    )
    return 2 if result.errors else 0


def run_reconcile(db, args) -> int:
    result = ReconciliationService(db).reconcile(
        args.period_id,
        update_accrual_paid=args.update_accrual_paid,
        include_zero=args.include_zero,
        override_reason=args.override_reason,
    )
    for row in result.rows:
        logger.info(
            "%s: accrued=%s paid=%s debt=%s credit=%s",
            row.plot_label,
            row.accrued,
            row.paid,
            row.debt,
            row.credit,
        )
    for category, totals in result.totals_by_category.items():
        logger.info(
            "%s total: accrued=%s paid=%s debt=%s",
            category.value,
            totals.accrued,
            totals.paid,
            totals.debt,
        )
    return 0


def run_apply_penalty(db, args) -> int:
    result = PenaltyService(db).apply_penalty(
        args.as_of,
        annual_rate=args.rate,
        date_from=args.date_from,
        date_to=args.date_to,
        min_penalty=args.min_penalty,
        actor_id=args.actor,
        override_reason=args.override_reason,
        include_voided=args.include_voided,
    )
    for charge in result.charges:
        logger.info("%s: %s (%s)", charge.plot_label, charge.amount, charge.action.value)
    logger.info(
        "Penalties %s: created=%d updated=%d total=%s",
        result.period,
        result.created_count,
        result.updated_count,
        result.total_penalty,
    )
    return 0


def run_recalc_penalties(db, args) -> int:
    result = PenaltyService(db).recalc_penalties(
        args.as_of,
        annual_rate=args.rate,
        plot_ids=args.plot_ids,
        limit=args.limit,
        include_voided=args.include_voided,
        min_penalty=args.min_penalty,
        actor_id=args.actor,
        override_reason=args.override_reason,
    )
    for sample in result.sample:
        logger.info("%s: %s -> %s", sample.plot_label, sample.before, sample.after)
    return 0


def run_debtors(db, args) -> int:
    debtors = DebtorAggregationService(db).aggregate_debt_by_person(args.period_id, args.as_of)
    for debtor in debtors:
        logger.info(
            "%s (%s): plots=%d debt=%s overdue_days=%d phone=%s",
            debtor.full_name,
            debtor.person_key,
            debtor.plot_count,
            debtor.debt_total,
            debtor.overdue_days,
            debtor.phone or "-",
        )
    return 0


COMMANDS = {
    "import": run_import,
    "reconcile": run_reconcile,
    "apply-penalty": run_apply_penalty,
    "recalc-penalties": run_recalc_penalties,
    "debtors": run_debtors,
}


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the billing CLI.

    Returns:
        Exit code: 0 for success, 1 for failure, 2 for partial import
    """
    load_dotenv()
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings)

    engine = create_db_engine(args.database_url)
    if args.command == "init-db":
        create_schema(engine)
        logger.info("Schema created")
        return 0

    db = create_session_factory(engine)()
    try:
        return COMMANDS[args.command](db, args)
    except BillingError as e:
        db.rollback()
        logger.error("%s failed [%s]: %s", args.command, e.code, e)
        return 1
    except KeyboardInterrupt:
        db.rollback()
        logger.warning("%s interrupted by user", args.command)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
