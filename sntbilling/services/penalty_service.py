"""Penalty accrual engine.

A penalty is interest on overdue debt: for every accrual item with positive
debt, debt x annual_rate x days_overdue / 365, days counted from the item's
accrued_on date to as_of. Item penalties are rounded to kopecks, items below
the minimum are dropped, and the rest are summed per plot.

Each plot has one PenaltyAccrual row per month of as_of. Writing is absolute:
a recalculation replaces amount and calculation and never adds to the
previous amount, so repeating a run with the same inputs is a no-op. Frozen
rows are never touched; voided rows only when a run explicitly includes them.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from sntbilling.models.accrual import AccrualCategory
from sntbilling.models.billing_period import BillingPeriod
from sntbilling.models.penalty_accrual import PenaltyAccrual, PenaltyStatus
from sntbilling.services.audit_service import AuditService, generate_request_id
from sntbilling.services.config import get_settings
from sntbilling.services.errors import InvalidTransition, NotFound, ValidationError
from sntbilling.services.matcher import PeriodResolver
from sntbilling.services.parsers import money, month_key
from sntbilling.services.period_service import BillingPeriodService, CloseCheck, assert_open_or_reason
from sntbilling.services.plot_registry import PlotRegistry
from sntbilling.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

DAYS_IN_YEAR = Decimal("365")
RATE_PER_DAY_QUANT = Decimal("0.00000001")
MAX_UPSERT_ATTEMPTS = 3


class PenaltyOutcome(str, Enum):
    """What happened to a plot during apply/recalc. Exactly one per plot."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED_FROZEN = "skipped_frozen"
    SKIPPED_VOIDED = "skipped_voided"
    SKIPPED_ZERO_DEBT = "skipped_zero_debt"


@dataclass(frozen=True)
class PenaltyLine:
    """Penalty on one accrual item."""

    accrual_id: int
    plot_id: int
    period_id: int
    category: AccrualCategory
    accrued_on: date
    base_debt: Decimal
    days_overdue: int
    amount: Decimal

    def as_dict(self) -> dict:
        return {
            "accrual_id": self.accrual_id,
            "period_id": self.period_id,
            "category": self.category.value,
            "accrued_on": self.accrued_on.isoformat(),
            "base_debt": str(self.base_debt),
            "days_overdue": self.days_overdue,
            "amount": str(self.amount),
        }


@dataclass
class PlotPenalty:
    """Penalty lines of one plot summed for the run."""

    plot_id: int
    lines: list[PenaltyLine] = field(default_factory=list)

    @property
    def amount(self) -> Decimal:
        return money(sum((line.amount for line in self.lines), Decimal("0")))

    @property
    def base_debt(self) -> Decimal:
        return money(sum((line.base_debt for line in self.lines), Decimal("0")))

    @property
    def days_overdue(self) -> int:
        return max((line.days_overdue for line in self.lines), default=0)


@dataclass
class PenaltyPreview:
    as_of: date
    period: str
    annual_rate: Decimal
    min_penalty: Decimal
    plots: list[PlotPenalty]

    @property
    def total(self) -> Decimal:
        return money(sum((p.amount for p in self.plots), Decimal("0")))


@dataclass(frozen=True)
class PenaltyCharge:
    plot_id: int
    plot_label: str
    amount: Decimal
    action: PenaltyOutcome


@dataclass
class ApplyPenaltyResult:
    period: str
    request_id: str
    created_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    skipped_frozen: int = 0
    skipped_voided: int = 0
    skipped_zero_debt: int = 0
    total_penalty: Decimal = Decimal("0.00")
    charges: list[PenaltyCharge] = field(default_factory=list)
    post_close: bool = False


@dataclass(frozen=True)
class PenaltySample:
    plot_id: int
    plot_label: str
    before: Decimal | None
    after: Decimal
    outcome: PenaltyOutcome


@dataclass
class RecalcPenaltiesResult:
    period: str
    request_id: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_frozen: int = 0
    skipped_voided: int = 0
    skipped_zero_debt: int = 0
    outcomes: dict[int, PenaltyOutcome] = field(default_factory=dict)
    sample: list[PenaltySample] = field(default_factory=list)
    post_close: bool = False

    def count(self, outcome: PenaltyOutcome) -> None:
        attribute = outcome.value
        setattr(self, attribute, getattr(self, attribute) + 1)


@dataclass
class PenaltySummary:
    count_by_status: dict[PenaltyStatus, int]
    active_amount: Decimal
    frozen_amount: Decimal
    voided_amount: Decimal


@dataclass(frozen=True)
class _UpsertResult:
    outcome: PenaltyOutcome
    before: Decimal | None
    after: Decimal


class PenaltyService:
    """Computes, stores and manages penalty accruals."""

    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()
        self.periods = BillingPeriodService(db)
        self.reconciliation = ReconciliationService(db)

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    def _rate(self, annual_rate: Decimal | float | str | None) -> Decimal:
        rate = self.settings.penalty_annual_rate if annual_rate is None else Decimal(str(annual_rate))
        if rate < 0:
            raise ValidationError("annual_rate must not be negative")
        return rate

    def _min_penalty(self, min_penalty: Decimal | float | str | None) -> Decimal:
        if min_penalty is None:
            return money(self.settings.penalty_min_amount)
        return money(min_penalty)

    def _compute(
        self,
        as_of: date,
        rate: Decimal,
        min_penalty: Decimal,
        date_from: date | None = None,
        date_to: date | None = None,
        plot_ids: set[int] | None = None,
    ) -> dict[int, PlotPenalty]:
        plots: dict[int, PlotPenalty] = {}
        items = self.reconciliation.outstanding_items(plot_ids, date_from, date_to)
        for item in sorted(items, key=lambda i: (i.plot_id, i.accrued_on, i.accrual_id)):
            days = max(0, (as_of - item.accrued_on).days)
            amount = money(item.debt * rate * Decimal(days) / DAYS_IN_YEAR)
            if amount <= 0 or amount < min_penalty:
                continue
            plots.setdefault(item.plot_id, PlotPenalty(plot_id=item.plot_id)).lines.append(
                PenaltyLine(
                    accrual_id=item.accrual_id,
                    plot_id=item.plot_id,
                    period_id=item.period_id,
                    category=item.category,
                    accrued_on=item.accrued_on,
                    base_debt=item.debt,
                    days_overdue=days,
                    amount=amount,
                )
            )
        return plots

    def preview_penalty(
        self,
        as_of: date,
        annual_rate: Decimal | float | str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        min_penalty: Decimal | float | str | None = None,
        plot_ids: Iterable[int] | None = None,
    ) -> PenaltyPreview:
        """Compute penalties without writing anything.

        Args:
            as_of: Calculation date
            annual_rate: Annual rate (0.1 = 10%); settings default when None
            date_from: Only accruals with accrued_on >= date_from
            date_to: Only accruals with accrued_on <= date_to
            min_penalty: Item penalties below this are dropped
            plot_ids: Restrict to these plots

        Returns:
            PenaltyPreview with per-plot lines
        """
        rate = self._rate(annual_rate)
        minimum = self._min_penalty(min_penalty)
        plots = self._compute(
            as_of,
            rate,
            minimum,
            date_from,
            date_to,
            set(plot_ids) if plot_ids is not None else None,
        )
        return PenaltyPreview(
            as_of=as_of,
            period=month_key(as_of),
            annual_rate=rate,
            min_penalty=minimum,
            plots=list(plots.values()),
        )

    def _calculation(self, as_of: date, rate: Decimal, penalty: PlotPenalty) -> dict:
        return {
            "as_of": as_of.isoformat(),
            "annual_rate": str(rate),
            "rate_per_day": str((rate / DAYS_IN_YEAR).quantize(RATE_PER_DAY_QUANT)),
            "base_debt": str(penalty.base_debt),
            "days_overdue": penalty.days_overdue,
            "policy_version": self.settings.penalty_policy_version,
            "items": [line.as_dict() for line in penalty.lines],
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _target_period(self, as_of: date) -> BillingPeriod | None:
        return PeriodResolver(self.periods.list_periods()).resolve(as_of)

    def _guard(self, as_of: date, override_reason: str | None) -> CloseCheck:
        return assert_open_or_reason(self._target_period(as_of), override_reason)

    def _find(self, plot_id: int, month: str) -> PenaltyAccrual | None:
        return (
            self.db.query(PenaltyAccrual)
            .filter(PenaltyAccrual.plot_id == plot_id, PenaltyAccrual.period == month)
            .one_or_none()
        )

    def _upsert_once(
        self,
        plot_id: int,
        as_of: date,
        rate: Decimal,
        min_penalty: Decimal,
        date_from: date | None,
        date_to: date | None,
        include_voided: bool,
        actor_id: str | None,
    ) -> _UpsertResult:
        month = month_key(as_of)
        with self.db.begin_nested():
            row = self._find(plot_id, month)
            before = money(row.amount) if row is not None else None

            if row is not None and row.status == PenaltyStatus.FROZEN:
                return _UpsertResult(PenaltyOutcome.SKIPPED_FROZEN, before, before)
            if row is not None and row.status == PenaltyStatus.VOIDED and not include_voided:
                return _UpsertResult(PenaltyOutcome.SKIPPED_VOIDED, before, before)

            # Debt is read again right before the write
            fresh = self._compute(as_of, rate, min_penalty, date_from, date_to, {plot_id})
            penalty = fresh.get(plot_id)
            if penalty is None:
                return _UpsertResult(PenaltyOutcome.SKIPPED_ZERO_DEBT, before, before or Decimal("0.00"))

            amount = penalty.amount
            calculation = self._calculation(as_of, rate, penalty)

            if row is None:
                row = PenaltyAccrual(
                    plot_id=plot_id,
                    period=month,
                    amount=amount,
                    status=PenaltyStatus.ACTIVE,
                    calculation=calculation,
                    created_by=actor_id,
                )
                self.db.add(row)
                self.db.flush()
                return _UpsertResult(PenaltyOutcome.CREATED, None, amount)

            if (
                row.status == PenaltyStatus.ACTIVE
                and before == amount
                and row.calculation == calculation
            ):
                return _UpsertResult(PenaltyOutcome.UNCHANGED, before, amount)

            if row.status == PenaltyStatus.VOIDED:
                logger.info("Reactivating voided penalty plot=%d period=%s", plot_id, month)
            row.status = PenaltyStatus.ACTIVE
            row.amount = amount
            row.calculation = calculation
            self.db.flush()
            return _UpsertResult(PenaltyOutcome.UPDATED, before, amount)

    def _upsert(self, plot_id: int, as_of: date, **kwargs) -> _UpsertResult:
        """Upsert with retry when a concurrent writer changed the row."""
        attempt = 1
        while True:
            try:
                return self._upsert_once(plot_id, as_of, **kwargs)
            except (IntegrityError, StaleDataError) as e:
                if attempt >= MAX_UPSERT_ATTEMPTS:
                    raise
                logger.warning(
                    "Concurrent penalty write for plot=%d period=%s (attempt %d): %s",
                    plot_id,
                    month_key(as_of),
                    attempt,
                    e.__class__.__name__,
                )
                self.db.expire_all()
                attempt += 1

    def _audit(
        self,
        action: str,
        as_of: date,
        rate: Decimal,
        outcomes: dict[int, PenaltyOutcome],
        check: CloseCheck,
        actor_id: str | None,
        request_id: str,
        extra: dict,
    ) -> None:
        month = month_key(as_of)
        affected = [
            f"{plot_id}:{month}"
            for plot_id, outcome in outcomes.items()
            if outcome in (PenaltyOutcome.CREATED, PenaltyOutcome.UPDATED)
        ]
        AuditService.log_event(
            self.db,
            action,
            "penalty_accrual",
            affected,
            actor_id=actor_id,
            request_id=request_id,
            details={
                "as_of": as_of.isoformat(),
                "annual_rate": str(rate),
                "policy_version": self.settings.penalty_policy_version,
                "post_close": check.closed,
                "override_reason": check.reason,
                "outcomes": {str(k): v.value for k, v in outcomes.items()},
                **extra,
            },
        )

    def apply_penalty(
        self,
        as_of: date,
        annual_rate: Decimal | float | str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        min_penalty: Decimal | float | str | None = None,
        actor_id: str | None = None,
        request_id: str | None = None,
        override_reason: str | None = None,
        include_voided: bool = False,
    ) -> ApplyPenaltyResult:
        """Charge penalties for every plot with positive overdue debt.

        The period-close guard runs before anything is computed or written:
        when the billing period containing as_of is closed, the whole call
        fails unless override_reason is given.

        Raises:
            PeriodClosed: Target period closed and no override reason
        """
        check = self._guard(as_of, override_reason)
        request_id = request_id or generate_request_id()
        rate = self._rate(annual_rate)
        minimum = self._min_penalty(min_penalty)

        preview = self.preview_penalty(as_of, rate, date_from, date_to, minimum)
        labels = PlotRegistry(self.db).labels({p.plot_id for p in preview.plots})
        result = ApplyPenaltyResult(period=preview.period, request_id=request_id, post_close=check.closed)

        outcomes: dict[int, PenaltyOutcome] = {}
        total = Decimal("0.00")
        for plot_penalty in preview.plots:
            upsert = self._upsert(
                plot_penalty.plot_id,
                as_of,
                rate=rate,
                min_penalty=minimum,
                date_from=date_from,
                date_to=date_to,
                include_voided=include_voided,
                actor_id=actor_id,
            )
            outcomes[plot_penalty.plot_id] = upsert.outcome
            if upsert.outcome == PenaltyOutcome.CREATED:
                result.created_count += 1
            elif upsert.outcome == PenaltyOutcome.UPDATED:
                result.updated_count += 1
            elif upsert.outcome == PenaltyOutcome.UNCHANGED:
                result.unchanged_count += 1
            elif upsert.outcome == PenaltyOutcome.SKIPPED_FROZEN:
                result.skipped_frozen += 1
            elif upsert.outcome == PenaltyOutcome.SKIPPED_VOIDED:
                result.skipped_voided += 1
            else:
                result.skipped_zero_debt += 1

            if upsert.outcome in (PenaltyOutcome.CREATED, PenaltyOutcome.UPDATED, PenaltyOutcome.UNCHANGED):
                total += upsert.after
                result.charges.append(
                    PenaltyCharge(
                        plot_id=plot_penalty.plot_id,
                        plot_label=labels.get(plot_penalty.plot_id, "-"),
                        amount=upsert.after,
                        action=upsert.outcome,
                    )
                )
        result.total_penalty = money(total)

        self._audit(
            "penalty.apply",
            as_of,
            rate,
            outcomes,
            check,
            actor_id,
            request_id,
            {
                "date_from": date_from.isoformat() if date_from else None,
                "date_to": date_to.isoformat() if date_to else None,
                "min_penalty": str(minimum),
                "total_penalty": str(result.total_penalty),
            },
        )
        self.db.commit()

        if check.closed:
            logger.warning(
                "Penalties applied into closed period for %s under override: %s",
                result.period,
                check.reason,
            )
        logger.info(
            "Applied penalties %s: created=%d updated=%d unchanged=%d frozen=%d voided=%d total=%s",
            result.period,
            result.created_count,
            result.updated_count,
            result.unchanged_count,
            result.skipped_frozen,
            result.skipped_voided,
            result.total_penalty,
        )
        return result

    def recalc_penalties(
        self,
        as_of: date,
        annual_rate: Decimal | float | str | None = None,
        plot_ids: Iterable[int] | None = None,
        limit: int | None = None,
        include_voided: bool = False,
        min_penalty: Decimal | float | str | None = None,
        actor_id: str | None = None,
        request_id: str | None = None,
        override_reason: str | None = None,
        sample_size: int | None = None,
    ) -> RecalcPenaltiesResult:
        """Recalculate penalties of the as_of month.

        Without plot_ids the run covers every plot with a penalty due plus
        every plot already holding a row for the month. Repeating a run with
        the same inputs reports only unchanged/skipped outcomes.

        Raises:
            PeriodClosed: Target period closed and no override reason
        """
        check = self._guard(as_of, override_reason)
        request_id = request_id or generate_request_id()
        rate = self._rate(annual_rate)
        minimum = self._min_penalty(min_penalty)
        month = month_key(as_of)
        sample_size = self.settings.recalc_sample_size if sample_size is None else sample_size

        if plot_ids is not None:
            targets = sorted(set(plot_ids))
        else:
            due = self._compute(as_of, rate, minimum)
            existing = {
                plot_id
                for (plot_id,) in self.db.query(PenaltyAccrual.plot_id).filter(PenaltyAccrual.period == month)
            }
            targets = sorted(set(due) | existing)
        if limit is not None:
            targets = targets[: max(0, limit)]

        labels = PlotRegistry(self.db).labels(set(targets))
        result = RecalcPenaltiesResult(period=month, request_id=request_id, post_close=check.closed)
        for plot_id in targets:
            upsert = self._upsert(
                plot_id,
                as_of,
                rate=rate,
                min_penalty=minimum,
                date_from=None,
                date_to=None,
                include_voided=include_voided,
                actor_id=actor_id,
            )
            result.outcomes[plot_id] = upsert.outcome
            result.count(upsert.outcome)
            if (
                upsert.outcome in (PenaltyOutcome.CREATED, PenaltyOutcome.UPDATED)
                and len(result.sample) < sample_size
            ):
                result.sample.append(
                    PenaltySample(
                        plot_id=plot_id,
                        plot_label=labels.get(plot_id, "-"),
                        before=upsert.before,
                        after=upsert.after,
                        outcome=upsert.outcome,
                    )
                )

        self._audit(
            "penalty.recalc",
            as_of,
            rate,
            result.outcomes,
            check,
            actor_id,
            request_id,
            {"limit": limit, "include_voided": include_voided, "min_penalty": str(minimum)},
        )
        self.db.commit()

        if check.closed:
            logger.warning(
                "Penalties recalculated in closed period for %s under override: %s",
                month,
                check.reason,
            )
        logger.info(
            "Recalculated penalties %s: created=%d updated=%d unchanged=%d frozen=%d voided=%d zero=%d",
            month,
            result.created,
            result.updated,
            result.unchanged,
            result.skipped_frozen,
            result.skipped_voided,
            result.skipped_zero_debt,
        )
        return result

    # ------------------------------------------------------------------
    # Manual lifecycle
    # ------------------------------------------------------------------

    def get_penalty(self, penalty_id: int) -> PenaltyAccrual:
        penalty = self.db.get(PenaltyAccrual, penalty_id)
        if penalty is None:
            raise NotFound(f"Penalty accrual {penalty_id} not found")
        return penalty

    def _change_status(
        self,
        penalty_id: int,
        allowed_from: set[PenaltyStatus],
        target: PenaltyStatus,
        action: str,
        actor_id: str | None,
        reason: str | None,
        override_reason: str | None,
    ) -> PenaltyAccrual:
        penalty = self.get_penalty(penalty_id)
        if penalty.status not in allowed_from:
            raise InvalidTransition(
                f"Penalty {penalty_id} is {penalty.status.value}, cannot {action}"
            )
        as_of = date.fromisoformat(penalty.calculation["as_of"])
        check = self._guard(as_of, override_reason)

        now = datetime.now(timezone.utc)
        previous = penalty.status
        penalty.status = target
        if target == PenaltyStatus.FROZEN:
            penalty.frozen_by, penalty.frozen_at, penalty.freeze_reason = actor_id, now, reason
        elif target == PenaltyStatus.VOIDED:
            penalty.voided_by, penalty.voided_at, penalty.void_reason = actor_id, now, reason
        elif previous == PenaltyStatus.FROZEN:
            penalty.unfrozen_by, penalty.unfrozen_at = actor_id, now

        AuditService.log_event(
            self.db,
            f"penalty.{action}",
            "penalty_accrual",
            [f"{penalty.plot_id}:{penalty.period}"],
            actor_id=actor_id,
            details={
                "penalty_id": penalty.id,
                "from_status": previous.value,
                "to_status": target.value,
                "reason": reason,
                "post_close": check.closed,
                "override_reason": check.reason,
            },
        )
        self.db.commit()
        logger.info(
            "Penalty %d (plot=%d, period=%s): %s -> %s",
            penalty.id,
            penalty.plot_id,
            penalty.period,
            previous.value,
            target.value,
        )
        return penalty

    def freeze(
        self,
        penalty_id: int,
        actor_id: str | None = None,
        reason: str | None = None,
        override_reason: str | None = None,
    ) -> PenaltyAccrual:
        """Lock an active penalty against apply/recalc."""
        return self._change_status(
            penalty_id, {PenaltyStatus.ACTIVE}, PenaltyStatus.FROZEN, "freeze", actor_id, reason, override_reason
        )

    def unfreeze(
        self, penalty_id: int, actor_id: str | None = None, override_reason: str | None = None
    ) -> PenaltyAccrual:
        return self._change_status(
            penalty_id, {PenaltyStatus.FROZEN}, PenaltyStatus.ACTIVE, "unfreeze", actor_id, None, override_reason
        )

    def void(
        self,
        penalty_id: int,
        reason: str,
        actor_id: str | None = None,
        override_reason: str | None = None,
    ) -> PenaltyAccrual:
        """Cancel a penalty. A reason is required."""
        if not (reason or "").strip():
            raise ValidationError("A reason is required to void a penalty")
        return self._change_status(
            penalty_id,
            {PenaltyStatus.ACTIVE, PenaltyStatus.FROZEN},
            PenaltyStatus.VOIDED,
            "void",
            actor_id,
            reason.strip(),
            override_reason,
        )

    def unvoid(
        self, penalty_id: int, actor_id: str | None = None, override_reason: str | None = None
    ) -> PenaltyAccrual:
        return self._change_status(
            penalty_id, {PenaltyStatus.VOIDED}, PenaltyStatus.ACTIVE, "unvoid", actor_id, None, override_reason
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_penalties(
        self,
        period: str | None = None,
        plot_id: int | None = None,
        status: PenaltyStatus | None = None,
    ) -> list[PenaltyAccrual]:
        query = self.db.query(PenaltyAccrual)
        if period:
            query = query.filter(PenaltyAccrual.period == period)
        if plot_id is not None:
            query = query.filter(PenaltyAccrual.plot_id == plot_id)
        if status is not None:
            query = query.filter(PenaltyAccrual.status == status)
        return query.order_by(PenaltyAccrual.period, PenaltyAccrual.plot_id).all()

    def summary(self, period: str | Iterable[str] | None = None) -> PenaltySummary:
        """Counts and amounts by status for one month, several months or all."""
        query = self.db.query(PenaltyAccrual)
        if isinstance(period, str):
            query = query.filter(PenaltyAccrual.period == period)
        elif period is not None:
            query = query.filter(PenaltyAccrual.period.in_(list(period)))

        counts = {status: 0 for status in PenaltyStatus}
        amounts = {status: Decimal("0.00") for status in PenaltyStatus}
        for penalty in query.all():
            counts[penalty.status] += 1
            amounts[penalty.status] += money(penalty.amount)
        return PenaltySummary(
            count_by_status=counts,
            active_amount=money(amounts[PenaltyStatus.ACTIVE]),
            frozen_amount=money(amounts[PenaltyStatus.FROZEN]),
            voided_amount=money(amounts[PenaltyStatus.VOIDED]),
        )


__all__ = [
    "PenaltyOutcome",
    "PenaltyLine",
    "PlotPenalty",
    "PenaltyPreview",
    "PenaltyCharge",
    "ApplyPenaltyResult",
    "PenaltySample",
    "RecalcPenaltiesResult",
    "PenaltySummary",
    "PenaltyService",
]
