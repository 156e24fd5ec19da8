"""Billing period registry: lifecycle transitions and the period-close guard."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable

from sqlalchemy.orm import Session

from sntbilling.models.billing_period import BillingPeriod, PeriodStatus
from sntbilling.services.audit_service import AuditService
from sntbilling.services.errors import InvalidTransition, NotFound, PeriodClosed, ValidationError

logger = logging.getLogger(__name__)

# Allowed forward transitions; reopening a closed period is a separate operation
TRANSITIONS: dict[PeriodStatus, set[PeriodStatus]] = {
    PeriodStatus.DRAFT: {PeriodStatus.LOCKED, PeriodStatus.CLOSED},
    PeriodStatus.LOCKED: {PeriodStatus.DRAFT, PeriodStatus.APPROVED, PeriodStatus.CLOSED},
    PeriodStatus.APPROVED: {PeriodStatus.CLOSED},
    PeriodStatus.CLOSED: set(),
}


@dataclass(frozen=True)
class CloseCheck:
    """Outcome of the period-close guard."""

    closed: bool
    reason: str | None = None
    periods: tuple[str, ...] = ()


def assert_open_or_reason(
    periods: BillingPeriod | Iterable[BillingPeriod | None] | None,
    reason: str | None = None,
) -> CloseCheck:
    """Fail-closed guard consulted before any financial write.

    Args:
        periods: Target period(s); None entries are ignored
        reason: Operator's override reason for writing into a closed period

    Returns:
        CloseCheck with closed=True when the write goes into a closed period
        under an override

    Raises:
        PeriodClosed: A target period is closed and no non-blank reason given
    """
    if periods is None:
        return CloseCheck(closed=False)
    if isinstance(periods, BillingPeriod):
        periods = [periods]

    closed = [p.title for p in periods if p is not None and p.is_closed]
    if not closed:
        return CloseCheck(closed=False)

    reason = (reason or "").strip()
    if not reason:
        raise PeriodClosed(", ".join(closed))
    return CloseCheck(closed=True, reason=reason, periods=tuple(closed))


def period_months(period: BillingPeriod) -> list[str]:
    """Month keys "YYYY-MM" spanned by a period."""
    months = []
    year, month = period.start_date.year, period.start_date.month
    while (year, month) <= (period.end_date.year, period.end_date.month):
        months.append(f"{year:04d}-{month:02d}")
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


class BillingPeriodService:
    """Service for billing period database operations."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_period(self, period_id: int) -> BillingPeriod:
        """Get billing period by ID.

        Raises:
            NotFound: If period does not exist
        """
        period = self.db.get(BillingPeriod, period_id)
        if period is None:
            raise NotFound(f"Billing period {period_id} not found")
        return period

    def list_periods(self, statuses: Iterable[PeriodStatus] | None = None) -> list[BillingPeriod]:
        """List periods ordered by start_date, optionally filtered by status."""
        query = self.db.query(BillingPeriod)
        if statuses is not None:
            query = query.filter(BillingPeriod.status.in_(list(statuses)))
        return query.order_by(BillingPeriod.start_date, BillingPeriod.id).all()

    def create_period(
        self,
        start_date: date,
        end_date: date,
        title: str | None = None,
        actor_id: str | None = None,
    ) -> BillingPeriod:
        """Create a new draft period.

        Title defaults to "YYYY-MM" for single-month periods and
        "DD.MM.YYYY - DD.MM.YYYY" otherwise.

        Raises:
            ValidationError: If start_date > end_date
        """
        if start_date > end_date:
            raise ValidationError("start_date must not be after end_date")

        if title is None:
            same_month = (start_date.year, start_date.month) == (end_date.year, end_date.month)
            title = (
                start_date.strftime("%Y-%m")
                if same_month
                else f"{start_date.strftime('%d.%m.%Y')} - {end_date.strftime('%d.%m.%Y')}"
            )

        period = BillingPeriod(
            title=title,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.DRAFT,
        )
        self.db.add(period)
        self.db.flush()

        AuditService.log_event(
            self.db,
            "period.create",
            "billing_period",
            [str(period.id)],
            actor_id=actor_id,
            details={"title": title, "from": start_date.isoformat(), "to": end_date.isoformat()},
        )
        self.db.commit()

        logger.info(
            "Created billing period: id=%d, title=%s, dates=%s to %s",
            period.id,
            title,
            start_date,
            end_date,
        )
        return period

    def _transition(
        self,
        period_id: int,
        target: PeriodStatus,
        actor_id: str | None,
        details: dict | None = None,
    ) -> BillingPeriod:
        period = self.get_period(period_id)
        if target not in TRANSITIONS[period.status]:
            raise InvalidTransition(
                f"Period {period.title} cannot move from {period.status.value} to {target.value}"
            )
        previous = period.status
        period.status = target
        AuditService.log_event(
            self.db,
            f"period.{target.value}",
            "billing_period",
            [str(period.id)],
            actor_id=actor_id,
            details={"from_status": previous.value, **(details or {})},
        )
        return period

    def lock_period(self, period_id: int, actor_id: str | None = None) -> BillingPeriod:
        period = self._transition(period_id, PeriodStatus.LOCKED, actor_id)
        self.db.commit()
        logger.info("Locked billing period %s", period.title)
        return period

    def approve_period(self, period_id: int, actor_id: str | None = None) -> BillingPeriod:
        period = self._transition(period_id, PeriodStatus.APPROVED, actor_id)
        self.db.commit()
        logger.info("Approved billing period %s", period.title)
        return period

    def close_period(self, period_id: int, actor_id: str | None = None) -> BillingPeriod:
        """Close a period and store a snapshot of its aggregates.

        Closing an already closed period returns it unchanged.
        """
        # Imported here: reconciliation/penalty services depend on this module
        from sntbilling.services.penalty_service import PenaltyService
        from sntbilling.services.reconciliation_service import ReconciliationService

        period = self.get_period(period_id)
        if period.is_closed:
            return period

        reconciliation = ReconciliationService(self.db).reconcile(period.id)
        penalty_summary = PenaltyService(self.db).summary(period=period_months(period))
        snapshot = {
            "accrued_total": str(reconciliation.totals.accrued),
            "paid_total": str(reconciliation.totals.paid),
            "debt_total": str(reconciliation.totals.debt),
            "penalty_total": str(penalty_summary.active_amount),
            "payments_count": reconciliation.payments_count,
            "debtors_count": sum(1 for row in reconciliation.rows if row.debt > 0),
        }

        self._transition(period_id, PeriodStatus.CLOSED, actor_id, {"snapshot": snapshot})
        period.closed_at = datetime.now(timezone.utc)
        period.closed_by = actor_id
        period.close_snapshot = snapshot
        self.db.commit()

        logger.info("Closed billing period %s: %s", period.title, snapshot)
        return period

    def reopen_period(self, period_id: int, reason: str, actor_id: str | None = None) -> BillingPeriod:
        """Reopen a closed period for corrections (back to approved).

        Raises:
            InvalidTransition: If period is not closed
            ValidationError: If reason is blank
        """
        if not (reason or "").strip():
            raise ValidationError("A reason is required to reopen a closed period")
        period = self.get_period(period_id)
        if not period.is_closed:
            raise InvalidTransition(f"Period {period.title} is not closed")

        period.status = PeriodStatus.APPROVED
        period.closed_at = None
        period.closed_by = None
        AuditService.log_event(
            self.db,
            "period.reopen",
            "billing_period",
            [str(period.id)],
            actor_id=actor_id,
            details={"reason": reason.strip(), "snapshot": period.close_snapshot},
        )
        self.db.commit()
        logger.warning("Reopened closed billing period %s: %s", period.title, reason)
        return period


__all__ = [
    "BillingPeriodService",
    "CloseCheck",
    "assert_open_or_reason",
    "period_months",
    "TRANSITIONS",
]
