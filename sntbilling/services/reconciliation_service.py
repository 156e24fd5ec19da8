"""Period reconciliation: accrued, paid and debt per plot and category.

paid for a (plot, category) is the maximum of the payment ledger sum and the
amount_paid recorded on the accrual from outside the ledger. An amount_paid
that reconciliation itself wrote back (it still equals reconciled_paid) is
ledger-derived and does not count as recorded, so voiding a payment raises
the debt again. A recorded amount above the ledger sum means money arrived
through a path the ledger does not see, and it is reported as a divergence
rather than averaged away. Debt is clamped at zero per category, so an
overpaid category shows up as credit and never reduces another category's
debt.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from sntbilling.models.accrual import AccrualCategory, AccrualItem
from sntbilling.models.billing_period import BillingPeriod
from sntbilling.models.payment import Payment
from sntbilling.services.accrual_service import AccrualLedger
from sntbilling.services.matcher import PeriodResolver
from sntbilling.services.parsers import money
from sntbilling.services.period_service import BillingPeriodService, assert_open_or_reason
from sntbilling.services.plot_registry import PlotRegistry

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

BalanceKey = tuple[int, AccrualCategory]


def _ledger_derived(accrual: AccrualItem) -> bool:
    """amount_paid is still the ledger sum reconciliation last wrote."""
    return accrual.reconciled_paid is not None and money(accrual.amount_paid) == money(accrual.reconciled_paid)


@dataclass
class CategoryBalance:
    """Accrued/paid/debt of one category of one plot in one period."""

    category: AccrualCategory
    accrued: Decimal = ZERO
    ledger_paid: Decimal = ZERO
    recorded_paid: Decimal = ZERO

    @property
    def paid(self) -> Decimal:
        return max(self.ledger_paid, self.recorded_paid)

    @property
    def debt(self) -> Decimal:
        return max(ZERO, self.accrued - self.paid)

    @property
    def credit(self) -> Decimal:
        return max(ZERO, self.paid - self.accrued)

    @property
    def diverges(self) -> bool:
        return self.recorded_paid > self.ledger_paid

    def as_dict(self) -> dict:
        return {
            "category": self.category.value,
            "accrued": str(self.accrued),
            "paid": str(self.paid),
            "debt": str(self.debt),
            "credit": str(self.credit),
        }


@dataclass
class ReconciliationRow:
    """One plot of a period reconciliation."""

    plot_id: int
    plot_label: str
    categories: dict[AccrualCategory, CategoryBalance] = field(default_factory=dict)

    def balance(self, category: AccrualCategory) -> CategoryBalance:
        return self.categories.get(category) or CategoryBalance(category=category)

    @property
    def accrued(self) -> Decimal:
        return sum((b.accrued for b in self.categories.values()), ZERO)

    @property
    def paid(self) -> Decimal:
        return sum((b.paid for b in self.categories.values()), ZERO)

    @property
    def debt(self) -> Decimal:
        return sum((b.debt for b in self.categories.values()), ZERO)

    @property
    def credit(self) -> Decimal:
        return sum((b.credit for b in self.categories.values()), ZERO)


@dataclass
class Totals:
    accrued: Decimal = ZERO
    paid: Decimal = ZERO
    debt: Decimal = ZERO
    credit: Decimal = ZERO

    def add(self, balance: CategoryBalance) -> None:
        self.accrued += balance.accrued
        self.paid += balance.paid
        self.debt += balance.debt
        self.credit += balance.credit


@dataclass(frozen=True)
class Divergence:
    """Recorded amount_paid above the payment ledger sum."""

    plot_id: int
    category: AccrualCategory
    ledger_paid: Decimal
    recorded_paid: Decimal


@dataclass
class PeriodReconciliation:
    """Result of reconcile()."""

    period_id: int
    period_title: str
    rows: list[ReconciliationRow]
    totals: Totals
    totals_by_category: dict[AccrualCategory, Totals]
    divergences: list[Divergence]
    payments_count: int = 0
    updated_accruals: int = 0

    def row(self, plot_id: int) -> ReconciliationRow | None:
        for row in self.rows:
            if row.plot_id == plot_id:
                return row
        return None


@dataclass(frozen=True)
class OutstandingItem:
    """Positive debt remaining on a single accrual item."""

    accrual_id: int
    plot_id: int
    period_id: int
    category: AccrualCategory
    accrued_on: date
    debt: Decimal


class ReconciliationService:
    """Derives debt from the accrual and payment ledgers."""

    def __init__(self, db: Session):
        self.db = db
        self.periods = BillingPeriodService(db)
        self.accruals = AccrualLedger(db)

    def attributed_payments(
        self, period: BillingPeriod, plot_ids: set[int] | None = None
    ) -> list[Payment]:
        """Non-voided, matched, categorized payments belonging to a period.

        A payment belongs to the period when it carries its id, or carries no
        period id and its date resolves to this period.
        """
        query = self.db.query(Payment).filter(
            Payment.is_voided.is_(False),
            Payment.plot_id.isnot(None),
            Payment.category.isnot(None),
            or_(
                Payment.period_id == period.id,
                and_(
                    Payment.period_id.is_(None),
                    Payment.paid_at >= period.start_date,
                    Payment.paid_at <= period.end_date,
                ),
            ),
        )
        if plot_ids is not None:
            query = query.filter(Payment.plot_id.in_(plot_ids))
        payments = query.all()

        if any(p.period_id is None for p in payments):
            resolver = PeriodResolver(self.periods.list_periods())
            payments = [
                p
                for p in payments
                if p.period_id is not None or getattr(resolver.resolve(p.paid_at), "id", None) == period.id
            ]
        return payments

    def _balances(
        self, period: BillingPeriod, plot_ids: set[int] | None = None
    ) -> tuple[dict[BalanceKey, CategoryBalance], dict[BalanceKey, AccrualItem], int]:
        balances: dict[BalanceKey, CategoryBalance] = {}
        accruals: dict[BalanceKey, AccrualItem] = {}

        for accrual in self.accruals.list_accruals(period.id, plot_ids):
            key = (accrual.plot_id, accrual.category)
            accruals[key] = accrual
            balances[key] = CategoryBalance(
                category=accrual.category,
                accrued=money(accrual.amount_accrued),
                recorded_paid=ZERO if _ledger_derived(accrual) else money(accrual.amount_paid),
            )

        payments = self.attributed_payments(period, plot_ids)
        for payment in payments:
            key = (payment.plot_id, payment.category)
            balance = balances.setdefault(key, CategoryBalance(category=payment.category))
            balance.ledger_paid = money(balance.ledger_paid + payment.amount)

        return balances, accruals, len(payments)

    def reconcile(
        self,
        period_id: int,
        update_accrual_paid: bool = False,
        include_zero: bool = False,
        override_reason: str | None = None,
    ) -> PeriodReconciliation:
        """Reconcile a billing period.

        Args:
            period_id: Billing period ID
            update_accrual_paid: Write paid back to AccrualItem.amount_paid
            include_zero: Include every registry plot, even without activity
            override_reason: Required to write back into a closed period

        Returns:
            PeriodReconciliation with rows sorted by plot label

        Raises:
            NotFound: Unknown period
            PeriodClosed: Write-back into a closed period without a reason
        """
        period = self.periods.get_period(period_id)
        if update_accrual_paid:
            assert_open_or_reason(period, override_reason)

        balances, accruals, payments_count = self._balances(period)

        divergences: list[Divergence] = []
        for (plot_id, category), balance in sorted(balances.items(), key=lambda kv: (kv[0][0], kv[0][1].value)):
            if balance.diverges:
                divergences.append(
                    Divergence(
                        plot_id=plot_id,
                        category=category,
                        ledger_paid=balance.ledger_paid,
                        recorded_paid=balance.recorded_paid,
                    )
                )
                logger.warning(
                    "Paid divergence in %s: plot=%d category=%s ledger=%s recorded=%s",
                    period.title,
                    plot_id,
                    category.value,
                    balance.ledger_paid,
                    balance.recorded_paid,
                )

        updated = 0
        if update_accrual_paid:
            updated = self._write_back(period, balances, accruals)

        plot_ids = {plot_id for plot_id, _ in balances}
        registry = PlotRegistry(self.db)
        labels = registry.labels(None if include_zero else plot_ids)
        if include_zero:
            plot_ids |= set(labels)

        rows_by_plot = {
            plot_id: ReconciliationRow(plot_id=plot_id, plot_label=labels.get(plot_id, "-"))
            for plot_id in plot_ids
        }
        totals = Totals()
        totals_by_category: dict[AccrualCategory, Totals] = {c: Totals() for c in AccrualCategory}
        for (plot_id, category), balance in balances.items():
            rows_by_plot[plot_id].categories[category] = balance
            totals.add(balance)
            totals_by_category[category].add(balance)

        rows = sorted(rows_by_plot.values(), key=lambda r: (r.plot_label, r.plot_id))
        logger.info(
            "Reconciled %s: plots=%d accrued=%s paid=%s debt=%s divergences=%d updated=%d",
            period.title,
            len(rows),
            totals.accrued,
            totals.paid,
            totals.debt,
            len(divergences),
            updated,
        )
        return PeriodReconciliation(
            period_id=period.id,
            period_title=period.title,
            rows=rows,
            totals=totals,
            totals_by_category=totals_by_category,
            divergences=divergences,
            payments_count=payments_count,
            updated_accruals=updated,
        )

    def _write_back(
        self,
        period: BillingPeriod,
        balances: dict[BalanceKey, CategoryBalance],
        accruals: dict[BalanceKey, AccrualItem],
    ) -> int:
        updated = 0
        marked = False
        for (plot_id, category), balance in balances.items():
            accrual = accruals.get((plot_id, category))
            if accrual is None:
                if balance.ledger_paid <= 0:
                    continue
                accrual = self.accruals.ensure_accrual(period.id, plot_id, category)
            ledger_value = balance.paid == balance.ledger_paid
            if money(accrual.amount_paid) != balance.paid:
                self.accruals.update_accrual(accrual.id, balance.paid, reconciled=ledger_value)
                updated += 1
            elif ledger_value and not _ledger_derived(accrual):
                # Already equal to the ledger sum: from now on it follows the ledger
                accrual.reconciled_paid = balance.paid
                marked = True
        if updated or marked:
            self.db.commit()
        return updated

    def outstanding_items(
        self,
        plot_ids: set[int] | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[OutstandingItem]:
        """Accrual items with positive debt across all periods.

        date_from/date_to restrict on the accrual's accrued_on date.
        """
        query = self.db.query(AccrualItem.period_id).distinct()
        if plot_ids is not None:
            query = query.filter(AccrualItem.plot_id.in_(plot_ids))
        if date_from is not None:
            query = query.filter(AccrualItem.accrued_on >= date_from)
        if date_to is not None:
            query = query.filter(AccrualItem.accrued_on <= date_to)
        period_ids = sorted(pid for (pid,) in query.all())

        items: list[OutstandingItem] = []
        for period_id in period_ids:
            period = self.periods.get_period(period_id)
            balances, accruals, _ = self._balances(period, plot_ids)
            for key, accrual in accruals.items():
                if date_from is not None and accrual.accrued_on < date_from:
                    continue
                if date_to is not None and accrual.accrued_on > date_to:
                    continue
                debt = balances[key].debt
                if debt > 0:
                    items.append(
                        OutstandingItem(
                            accrual_id=accrual.id,
                            plot_id=accrual.plot_id,
                            period_id=period.id,
                            category=accrual.category,
                            accrued_on=accrual.accrued_on,
                            debt=debt,
                        )
                    )
        return items


__all__ = [
    "CategoryBalance",
    "ReconciliationRow",
    "Totals",
    "Divergence",
    "PeriodReconciliation",
    "OutstandingItem",
    "ReconciliationService",
]
