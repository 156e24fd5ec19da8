"""Payment ledger service: statement import, manual entry and attribution.

Provides methods for:
- At-most-once import of statement rows (fingerprint dedup)
- Recording manual payments
- Voiding payments (the only mutation of a recorded amount)
- Attributing unmatched payments to plots, manually or by re-matching

Payments are append-only. Rows are processed in order; every row sees the
fingerprints of the rows before it, both from storage and from the current
batch, and each row is written inside its own savepoint.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Union

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sntbilling.models.accrual import AccrualCategory
from sntbilling.models.billing_period import BillingPeriod
from sntbilling.models.payment import MatchType, Payment, PaymentSource
from sntbilling.models.payment_import import ImportStatus, PaymentImport
from sntbilling.services.audit_service import AuditService, generate_request_id
from sntbilling.services.config import get_settings
from sntbilling.services.errors import (
    BillingError,
    DuplicatePayment,
    InvalidTransition,
    NotFound,
    PeriodClosed,
    RowError,
    UnmatchedRow,
    ValidationError,
)
from sntbilling.services.fingerprint import FINGERPRINT_VERSION, compute_fingerprint
from sntbilling.services.import_rows import ImportRow, parse_import_row, read_statement_csv
from sntbilling.services.matcher import CategoryResolver, PeriodResolver, PlotMatcher
from sntbilling.services.period_service import BillingPeriodService, assert_open_or_reason
from sntbilling.services.plot_registry import PlotRegistry

logger = logging.getLogger(__name__)

RowInput = Union[ImportRow, tuple[int, dict[str, Any]], dict[str, Any]]


@dataclass
class ImportResult:
    """Exact counts of an import batch."""

    import_id: int | None = None
    total: int = 0
    inserted: int = 0
    skipped: int = 0
    matched: int = 0
    unmatched: int = 0
    errors: list[RowError] = field(default_factory=list)
    payment_ids: list[int] = field(default_factory=list)
    post_close: int = 0


@dataclass(frozen=True)
class PreviewRow:
    """Dry-run outcome of one import row."""

    row_number: int
    status: str
    fingerprint: str | None = None
    plot_id: int | None = None
    match_type: MatchType | None = None
    period_title: str | None = None
    category: AccrualCategory | None = None
    message: str | None = None


@dataclass
class RematchResult:
    matched: int = 0
    still_unmatched: int = 0
    errors: list[RowError] = field(default_factory=list)


class PaymentLedgerService:
    """Writes to the payment ledger."""

    def __init__(self, db: Session):
        """Initialize payment ledger service.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db
        self.settings = get_settings()
        self.periods = BillingPeriodService(db)
        self.registry = PlotRegistry(db)

    # Row preparation

    @staticmethod
    def _to_row(item: RowInput, index: int) -> ImportRow:
        if isinstance(item, ImportRow):
            return item
        if isinstance(item, tuple):
            row_number, raw = item
            return parse_import_row(raw, row_number)
        return parse_import_row(item, item.get("row_number") or index)

    @staticmethod
    def _row_number(item: RowInput, index: int) -> int:
        if isinstance(item, ImportRow):
            return item.row_number
        if isinstance(item, tuple):
            return item[0]
        return item.get("row_number") or index

    def _exists(self, fingerprint: str, external_id: str | None) -> bool:
        conditions = [Payment.fingerprint == fingerprint]
        if external_id:
            conditions.append(Payment.external_id == external_id)
        return self.db.query(Payment.id).filter(or_(*conditions)).first() is not None

    def _resolvers(self) -> tuple[PlotMatcher, PeriodResolver, CategoryResolver]:
        return (
            PlotMatcher(self.registry.list_plots()),
            PeriodResolver(self.periods.list_periods()),
            CategoryResolver(self.settings.default_payment_category),
        )

    # Import

    def preview_import(self, rows: Iterable[RowInput]) -> list[PreviewRow]:
        """Classify rows as an import would, without writing anything.

        Status is one of: new, duplicate, unmatched, period_closed,
        validation_error.
        """
        matcher, periods, categories = self._resolvers()
        seen: set[str] = set()
        preview: list[PreviewRow] = []

        for index, item in enumerate(rows, start=1):
            try:
                row = self._to_row(item, index)
            except ValidationError as e:
                preview.append(
                    PreviewRow(row_number=self._row_number(item, index), status=e.code, message=str(e))
                )
                continue

            fingerprint = compute_fingerprint(row)
            if fingerprint in seen or self._exists(fingerprint, row.external_id):
                preview.append(
                    PreviewRow(row.row_number, DuplicatePayment.code, fingerprint=fingerprint)
                )
                continue
            seen.add(fingerprint)

            match = matcher.match(row)
            period = periods.resolve(row.paid_at)
            if period is not None and period.is_closed:
                status = PeriodClosed.code
            elif match is None:
                status = UnmatchedRow.code
            else:
                status = "new"
            preview.append(
                PreviewRow(
                    row_number=row.row_number,
                    status=status,
                    fingerprint=fingerprint,
                    plot_id=match.plot_id if match else None,
                    match_type=match.match_type if match else None,
                    period_title=period.title if period else None,
                    category=categories.resolve(row),
                )
            )
        return preview

    def insert_payments(
        self,
        rows: Iterable[RowInput],
        file_name: str = "import.csv",
        actor_id: str | None = None,
        request_id: str | None = None,
        override_reason: str | None = None,
    ) -> ImportResult:
        """Insert statement rows at most once each.

        A row is skipped when its fingerprint (or external id) is already in
        storage or earlier in the batch. Malformed rows and rows whose period
        is closed (without override_reason) are reported in errors; the
        batch continues. Rows no strategy can match are stored unmatched.

        Args:
            rows: ImportRow objects, (row_number, raw dict) pairs or raw dicts
            file_name: Source name recorded in the import journal
            actor_id: Operator running the import
            request_id: Correlation id for audit
            override_reason: Allows writing into closed periods

        Returns:
            ImportResult with inserted/skipped/matched/unmatched counts and errors
        """
        request_id = request_id or generate_request_id()
        journal = PaymentImport(file_name=file_name, status=ImportStatus.PENDING, created_by=actor_id)
        self.db.add(journal)
        self.db.flush()

        matcher, periods, categories = self._resolvers()
        result = ImportResult(import_id=journal.id)
        seen: set[str] = set()

        for index, item in enumerate(rows, start=1):
            result.total += 1
            try:
                row = self._to_row(item, index)
                payment = self._insert_row(row, matcher, periods, categories, seen, override_reason, journal, actor_id)
            except DuplicatePayment:
                result.skipped += 1
                continue
            except (ValidationError, PeriodClosed) as e:
                row_number = self._row_number(item, index)
                result.errors.append(RowError.from_exception(row_number, e))
                logger.error("Import %s row %d rejected: %s", file_name, row_number, e)
                continue

            result.inserted += 1
            result.payment_ids.append(payment.id)
            if payment.is_matched:
                result.matched += 1
            else:
                result.unmatched += 1
            if payment.period is not None and payment.period.is_closed:
                result.post_close += 1

        journal.total_rows = result.total
        journal.inserted_rows = result.inserted
        journal.skipped_rows = result.skipped
        journal.matched_rows = result.matched
        journal.unmatched_rows = result.unmatched
        journal.error_rows = len(result.errors)
        journal.errors = [e.as_dict() for e in result.errors]
        journal.status = ImportStatus.APPLIED

        AuditService.log_event(
            self.db,
            "payment.import",
            "payment_import",
            [str(journal.id)],
            actor_id=actor_id,
            request_id=request_id,
            details={
                "file_name": file_name,
                "total": result.total,
                "inserted": result.inserted,
                "skipped": result.skipped,
                "matched": result.matched,
                "unmatched": result.unmatched,
                "errors": len(result.errors),
                "post_close": result.post_close,
                "override_reason": override_reason if result.post_close else None,
            },
        )
        self.db.commit()

        if result.post_close:
            logger.warning(
                "Import %s wrote %d payments into closed periods: %s",
                file_name,
                result.post_close,
                override_reason,
            )
        logger.info(
            "Imported %s: total=%d inserted=%d skipped=%d matched=%d unmatched=%d errors=%d",
            file_name,
            result.total,
            result.inserted,
            result.skipped,
            result.matched,
            result.unmatched,
            len(result.errors),
        )
        return result

    def _insert_row(
        self,
        row: ImportRow,
        matcher: PlotMatcher,
        periods: PeriodResolver,
        categories: CategoryResolver,
        seen: set[str],
        override_reason: str | None,
        journal: PaymentImport,
        actor_id: str | None,
    ) -> Payment:
        fingerprint = compute_fingerprint(row)
        if fingerprint in seen or self._exists(fingerprint, row.external_id):
            raise DuplicatePayment(f"Row {row.row_number}: payment already recorded")

        match = matcher.match(row)
        period = periods.resolve(row.paid_at)
        assert_open_or_reason(period, override_reason)

        payment = Payment(
            amount=row.amount,
            paid_at=row.paid_at,
            plot_id=match.plot_id if match else None,
            match_type=match.match_type if match else None,
            period_id=period.id if period else None,
            category=categories.resolve(row),
            fingerprint=fingerprint,
            fingerprint_version=FINGERPRINT_VERSION,
            external_id=row.external_id,
            source=PaymentSource.IMPORT,
            import_id=journal.id,
            plot_ref=row.plot_ref,
            payer_name=row.payer_name,
            payer_phone=row.payer_phone,
            comment=row.comment,
            created_by=actor_id,
        )
        try:
            with self.db.begin_nested():
                self.db.add(payment)
                self.db.flush()
        except IntegrityError as e:
            raise DuplicatePayment(f"Row {row.row_number}: payment already recorded") from e
        finally:
            seen.add(fingerprint)
        return payment

    def import_statement_csv(
        self,
        content: str,
        file_name: str = "statement.csv",
        actor_id: str | None = None,
        request_id: str | None = None,
        override_reason: str | None = None,
    ) -> ImportResult:
        """Read a bank statement CSV and insert its rows.

        Raises:
            ValidationError: Empty file or missing date/amount columns
        """
        rows = read_statement_csv(content)
        return self.insert_payments(
            rows,
            file_name=file_name,
            actor_id=actor_id,
            request_id=request_id,
            override_reason=override_reason,
        )

    # Manual operations

    def _period_for(self, payment: Payment) -> BillingPeriod | None:
        if payment.period is not None:
            return payment.period
        return PeriodResolver(self.periods.list_periods()).resolve(payment.paid_at)

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        return payment

    def record_manual_payment(
        self,
        plot_id: int,
        amount: Decimal | int | str,
        paid_at: date,
        category: AccrualCategory | str | None = None,
        payer_name: str | None = None,
        comment: str | None = None,
        external_id: str | None = None,
        actor_id: str | None = None,
        override_reason: str | None = None,
    ) -> Payment:
        """Record a payment entered by an operator.

        Raises:
            PlotNotFound: Unknown plot
            ValidationError: Bad amount or category
            DuplicatePayment: Same fingerprint or external id already recorded
            PeriodClosed: Closed period without override reason
        """
        plot = self.registry.get_plot(plot_id)
        row = parse_import_row(
            {
                "paid_at": paid_at,
                "amount": amount,
                "plot_ref": plot.label,
                "payer_name": payer_name or plot.owner_name,
                "comment": comment,
                "external_id": external_id,
                "category": category,
            },
            row_number=0,
        )
        fingerprint = compute_fingerprint(row)
        if self._exists(fingerprint, row.external_id):
            raise DuplicatePayment(f"Payment for {plot.label} on {paid_at} already recorded")

        period = PeriodResolver(self.periods.list_periods()).resolve(row.paid_at)
        check = assert_open_or_reason(period, override_reason)

        payment = Payment(
            amount=row.amount,
            paid_at=row.paid_at,
            plot_id=plot.plot_id,
            match_type=MatchType.MANUAL,
            period_id=period.id if period else None,
            category=CategoryResolver(self.settings.default_payment_category).resolve(row),
            fingerprint=fingerprint,
            fingerprint_version=FINGERPRINT_VERSION,
            external_id=row.external_id,
            source=PaymentSource.MANUAL,
            plot_ref=row.plot_ref,
            payer_name=row.payer_name,
            comment=row.comment,
            created_by=actor_id,
        )
        self.db.add(payment)
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicatePayment(f"Payment for {plot.label} on {paid_at} already recorded") from e

        AuditService.log_event(
            self.db,
            "payment.manual",
            "payment",
            [str(payment.id)],
            actor_id=actor_id,
            details={
                "plot_id": plot.plot_id,
                "amount": str(row.amount),
                "paid_at": row.paid_at.isoformat(),
                "category": payment.category.value if payment.category else None,
                "post_close": check.closed,
                "override_reason": check.reason,
            },
        )
        self.db.commit()

        if check.closed:
            logger.warning("Manual payment %d recorded into closed period: %s", payment.id, check.reason)
        logger.info(
            "Recorded manual payment %d: plot=%s amount=%s date=%s",
            payment.id,
            plot.label,
            row.amount,
            row.paid_at,
        )
        return payment

    def void_payment(
        self,
        payment_id: int,
        reason: str,
        actor_id: str | None = None,
        override_reason: str | None = None,
    ) -> Payment:
        """Soft-delete a payment.

        Raises:
            NotFound: Unknown payment
            InvalidTransition: Already voided
            ValidationError: Blank reason
            PeriodClosed: Closed period without override reason
        """
        if not (reason or "").strip():
            raise ValidationError("A reason is required to void a payment")
        payment = self.get_payment(payment_id)
        if payment.is_voided:
            raise InvalidTransition(f"Payment {payment_id} is already voided")
        check = assert_open_or_reason(self._period_for(payment), override_reason)

        payment.is_voided = True
        payment.voided_by = actor_id
        payment.voided_at = datetime.now(timezone.utc)
        payment.void_reason = reason.strip()

        AuditService.log_event(
            self.db,
            "payment.void",
            "payment",
            [str(payment.id)],
            actor_id=actor_id,
            details={
                "amount": str(payment.amount),
                "reason": payment.void_reason,
                "post_close": check.closed,
                "override_reason": check.reason,
            },
        )
        self.db.commit()
        logger.info("Voided payment %d (%s): %s", payment.id, payment.amount, payment.void_reason)
        return payment

    def assign_payment(
        self,
        payment_id: int,
        plot_id: int,
        category: AccrualCategory | str | None = None,
        actor_id: str | None = None,
        override_reason: str | None = None,
    ) -> Payment:
        """Attribute an unmatched payment to a plot.

        Raises:
            NotFound: Unknown payment
            PlotNotFound: Unknown plot
            InvalidTransition: Payment voided or already matched
            PeriodClosed: Closed period without override reason
        """
        payment = self.get_payment(payment_id)
        if payment.is_voided:
            raise InvalidTransition(f"Payment {payment_id} is voided")
        if payment.is_matched:
            raise InvalidTransition(f"Payment {payment_id} is already attributed to plot {payment.plot_id}")
        plot = self.registry.get_plot(plot_id)

        resolved_category = AccrualCategory.normalize(category)
        if category is not None and resolved_category is None:
            raise ValidationError(f"Unknown category '{category}'")

        period = self._period_for(payment)
        check = assert_open_or_reason(period, override_reason)

        payment.plot_id = plot.plot_id
        payment.match_type = MatchType.MANUAL
        payment.period_id = period.id if period else None
        if resolved_category is not None:
            payment.category = resolved_category
        elif payment.category is None:
            payment.category = AccrualCategory.normalize(self.settings.default_payment_category)

        AuditService.log_event(
            self.db,
            "payment.assign",
            "payment",
            [str(payment.id)],
            actor_id=actor_id,
            details={
                "plot_id": plot.plot_id,
                "category": payment.category.value if payment.category else None,
                "post_close": check.closed,
                "override_reason": check.reason,
            },
        )
        self.db.commit()
        logger.info("Assigned payment %d to %s", payment.id, plot.label)
        return payment

    def rematch_unmatched(
        self,
        actor_id: str | None = None,
        override_reason: str | None = None,
    ) -> RematchResult:
        """Run the matcher again over stored unmatched payments."""
        matcher, periods, _ = self._resolvers()
        result = RematchResult()
        matched_ids: list[str] = []

        unmatched = (
            self.db.query(Payment)
            .filter(Payment.plot_id.is_(None), Payment.is_voided.is_(False))
            .order_by(Payment.id)
            .all()
        )
        for payment in unmatched:
            row = ImportRow(
                row_number=payment.id,
                paid_at=payment.paid_at,
                amount=payment.amount,
                plot_ref=payment.plot_ref,
                payer_name=payment.payer_name,
                payer_phone=payment.payer_phone,
                comment=payment.comment,
            )
            match = matcher.match(row)
            if match is None:
                result.still_unmatched += 1
                continue

            period = payment.period or periods.resolve(payment.paid_at)
            try:
                assert_open_or_reason(period, override_reason)
            except BillingError as e:
                result.errors.append(RowError.from_exception(payment.id, e))
                continue

            payment.plot_id = match.plot_id
            payment.match_type = match.match_type
            payment.period_id = period.id if period else None
            result.matched += 1
            matched_ids.append(str(payment.id))

        if matched_ids:
            AuditService.log_event(
                self.db,
                "payment.rematch",
                "payment",
                matched_ids,
                actor_id=actor_id,
                details={"matched": result.matched, "still_unmatched": result.still_unmatched},
            )
        self.db.commit()
        logger.info(
            "Re-matched unmatched payments: matched=%d still_unmatched=%d errors=%d",
            result.matched,
            result.still_unmatched,
            len(result.errors),
        )
        return result

    def list_payments(
        self,
        period_id: int | None = None,
        plot_id: int | None = None,
        unmatched_only: bool = False,
        include_voided: bool = False,
    ) -> list[Payment]:
        query = self.db.query(Payment)
        if period_id is not None:
            query = query.filter(Payment.period_id == period_id)
        if plot_id is not None:
            query = query.filter(Payment.plot_id == plot_id)
        if unmatched_only:
            query = query.filter(Payment.plot_id.is_(None))
        if not include_voided:
            query = query.filter(Payment.is_voided.is_(False))
        return query.order_by(Payment.paid_at, Payment.id).all()


__all__ = [
    "ImportResult",
    "PreviewRow",
    "RematchResult",
    "PaymentLedgerService",
]
