"""Person-level debt aggregation for collections."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from sntbilling.models.billing_period import BillingPeriod, PeriodStatus
from sntbilling.models.plot import Plot
from sntbilling.services.parsers import normalize_name, normalize_phone
from sntbilling.services.period_service import BillingPeriodService
from sntbilling.services.plot_registry import PlotRegistry
from sntbilling.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

ELIGIBLE_STATUSES = (
    PeriodStatus.DRAFT,
    PeriodStatus.LOCKED,
    PeriodStatus.APPROVED,
    PeriodStatus.CLOSED,
)


@dataclass
class DebtorAggregate:
    """Debt of one person across all of their plots. Derived, never stored."""

    person_key: str
    full_name: str
    phone: str | None = None
    email: str | None = None
    accrued_total: Decimal = Decimal("0.00")
    paid_total: Decimal = Decimal("0.00")
    debt_total: Decimal = Decimal("0.00")
    plot_ids: set[int] = field(default_factory=set)
    earliest_due: date | None = None
    overdue_days: int = 0

    @property
    def plot_count(self) -> int:
        return len(self.plot_ids)


def person_key(plot: Plot) -> str:
    """Stable identity of a plot's owner.

    The canonical person id when the registry resolved one; otherwise a key
    built from the normalized owner name and phone digits, so repeated runs
    over the same data group plots the same way. Plots with neither name nor
    phone stay on their own.
    """
    if plot.person_id is not None:
        return f"person:{plot.person_id}"
    name = normalize_name(plot.owner_name)
    phone = normalize_phone(plot.owner_phone)
    if not name and not phone:
        return f"plot:{plot.id}"
    return f"fallback:{name}|{phone}"


class DebtorAggregationService:
    """Rolls plot debt up to persons."""

    def __init__(self, db: Session):
        self.db = db
        self.periods = BillingPeriodService(db)
        self.reconciliation = ReconciliationService(db)

    def _eligible_periods(self, period_id: int | None) -> list[BillingPeriod]:
        if period_id is not None:
            return [self.periods.get_period(period_id)]
        return self.periods.list_periods(statuses=ELIGIBLE_STATUSES)

    def aggregate_debt_by_person(
        self,
        period_id: int | None = None,
        as_of: date | None = None,
    ) -> list[DebtorAggregate]:
        """Per-person debt, highest debt first.

        Args:
            period_id: Single period to aggregate; all eligible periods if None
            as_of: Reference date for overdue_days; today if None

        Returns:
            Persons with positive debt, sorted by debt descending

        Raises:
            NotFound: Unknown period_id
        """
        as_of = as_of or date.today()
        periods = self._eligible_periods(period_id)
        plots = {plot.id: plot for plot in PlotRegistry(self.db).list_plots()}

        aggregates: dict[str, DebtorAggregate] = {}
        for period in periods:
            reconciliation = self.reconciliation.reconcile(period.id)
            for row in reconciliation.rows:
                if row.debt <= 0:
                    continue
                plot = plots.get(row.plot_id)
                if plot is None:
                    continue

                key = person_key(plot)
                aggregate = aggregates.get(key)
                if aggregate is None:
                    person = plot.person
                    aggregate = DebtorAggregate(
                        person_key=key,
                        full_name=(person.full_name if person else plot.owner_name) or plot.label,
                        phone=(person.phone if person else None) or plot.owner_phone,
                        email=(person.email if person else None) or plot.owner_email,
                    )
                    aggregates[key] = aggregate

                aggregate.accrued_total += row.accrued
                aggregate.paid_total += row.paid
                aggregate.debt_total += row.debt
                aggregate.plot_ids.add(row.plot_id)
                if aggregate.earliest_due is None or period.end_date < aggregate.earliest_due:
                    aggregate.earliest_due = period.end_date

        for aggregate in aggregates.values():
            if aggregate.earliest_due is not None:
                aggregate.overdue_days = max(0, (as_of - aggregate.earliest_due).days)

        result = sorted(
            aggregates.values(),
            key=lambda a: (-a.debt_total, a.full_name, a.person_key),
        )
        logger.info(
            "Aggregated debt: periods=%d persons=%d total=%s",
            len(periods),
            len(result),
            sum((a.debt_total for a in result), Decimal("0.00")),
        )
        return result


__all__ = ["DebtorAggregate", "DebtorAggregationService", "ELIGIBLE_STATUSES", "person_key"]
