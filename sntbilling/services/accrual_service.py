"""Accrual ledger: charges per (period, plot, category)."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from sntbilling.models.accrual import AccrualCategory, AccrualItem
from sntbilling.services.audit_service import AuditService
from sntbilling.services.errors import NotFound, ValidationError
from sntbilling.services.parsers import money
from sntbilling.services.period_service import BillingPeriodService, assert_open_or_reason
from sntbilling.services.plot_registry import PlotRegistry

logger = logging.getLogger(__name__)


class AccrualLedger:
    """Read/write access to AccrualItem rows."""

    def __init__(self, db: Session):
        """Initialize accrual ledger.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    def list_accruals(self, period_id: int, plot_ids: set[int] | None = None) -> list[AccrualItem]:
        """Accruals of a period, ordered by plot and category."""
        query = self.db.query(AccrualItem).filter(AccrualItem.period_id == period_id)
        if plot_ids is not None:
            query = query.filter(AccrualItem.plot_id.in_(plot_ids))
        return query.order_by(AccrualItem.plot_id, AccrualItem.category).all()

    def get_accrual(self, accrual_id: int) -> AccrualItem:
        accrual = self.db.get(AccrualItem, accrual_id)
        if accrual is None:
            raise NotFound(f"Accrual {accrual_id} not found")
        return accrual

    def find_accrual(
        self, period_id: int, plot_id: int, category: AccrualCategory
    ) -> AccrualItem | None:
        return (
            self.db.query(AccrualItem)
            .filter(
                AccrualItem.period_id == period_id,
                AccrualItem.plot_id == plot_id,
                AccrualItem.category == category,
            )
            .one_or_none()
        )

    def update_accrual(
        self, accrual_id: int, amount_paid: Decimal, reconciled: bool = False
    ) -> AccrualItem:
        """Set amount_paid on an accrual (flushed, not committed).

        reconciled=True marks the value as the payment ledger sum, so a later
        reconciliation may lower it when payments are voided.
        """
        amount_paid = money(amount_paid)
        if amount_paid < 0:
            raise ValidationError("amount_paid must not be negative")
        accrual = self.get_accrual(accrual_id)
        accrual.amount_paid = amount_paid
        accrual.reconciled_paid = amount_paid if reconciled else None
        self.db.flush()
        return accrual

    def ensure_accrual(self, period_id: int, plot_id: int, category: AccrualCategory) -> AccrualItem:
        """Return the accrual for the key, creating a zero accrual when missing.

        A zero accrual holds amount_paid for a payment that arrived in a
        category nothing was charged for.
        """
        accrual = self.find_accrual(period_id, plot_id, category)
        if accrual is not None:
            return accrual

        period = BillingPeriodService(self.db).get_period(period_id)
        accrual = AccrualItem(
            period_id=period_id,
            plot_id=plot_id,
            category=category,
            amount_accrued=Decimal("0.00"),
            amount_paid=Decimal("0.00"),
            accrued_on=period.start_date,
        )
        self.db.add(accrual)
        self.db.flush()
        logger.debug(
            "Created zero accrual: period=%s plot=%d category=%s",
            period.title,
            plot_id,
            category.value,
        )
        return accrual

    def add_accrual(
        self,
        period_id: int,
        plot_id: int,
        category: AccrualCategory | str,
        amount: Decimal | int | str,
        accrued_on: date | None = None,
        actor_id: str | None = None,
        override_reason: str | None = None,
    ) -> AccrualItem:
        """Charge a plot for a period and category.

        Charging an existing key adds to its accrued amount.

        Args:
            period_id: Billing period ID
            plot_id: Plot ID from the registry
            category: Debt category
            amount: Charge amount (>= 0)
            accrued_on: Due date; defaults to the period start
            actor_id: Operator performing the charge
            override_reason: Required when the period is closed

        Returns:
            The created or updated AccrualItem

        Raises:
            NotFound: Unknown period
            PlotNotFound: Unknown plot
            PeriodClosed: Closed period without override reason
            ValidationError: Negative amount or unknown category
        """
        period = BillingPeriodService(self.db).get_period(period_id)
        check = assert_open_or_reason(period, override_reason)
        PlotRegistry(self.db).get_plot(plot_id)

        resolved = AccrualCategory.normalize(category)
        if resolved is None:
            raise ValidationError(f"Unknown accrual category '{category}'")
        amount = money(amount)
        if amount < 0:
            raise ValidationError("Accrual amount must not be negative")

        accrual = self.find_accrual(period_id, plot_id, resolved)
        if accrual is None:
            accrual = AccrualItem(
                period_id=period_id,
                plot_id=plot_id,
                category=resolved,
                amount_accrued=amount,
                amount_paid=Decimal("0.00"),
                accrued_on=accrued_on or period.start_date,
            )
            self.db.add(accrual)
        else:
            accrual.amount_accrued = money(accrual.amount_accrued + amount)
            if accrued_on is not None:
                accrual.accrued_on = accrued_on
        self.db.flush()

        AuditService.log_event(
            self.db,
            "accrual.add",
            "accrual_item",
            [str(accrual.id)],
            actor_id=actor_id,
            details={
                "period": period.title,
                "plot_id": plot_id,
                "category": resolved.value,
                "amount": str(amount),
                "post_close": check.closed,
                "override_reason": check.reason,
            },
        )
        self.db.commit()

        if check.closed:
            logger.warning(
                "Accrual added to closed period %s (plot %d): %s",
                period.title,
                plot_id,
                check.reason,
            )
        else:
            logger.info(
                "Accrual added: period=%s plot=%d category=%s amount=%s",
                period.title,
                plot_id,
                resolved.value,
                amount,
            )
        return accrual


__all__ = ["AccrualLedger"]
