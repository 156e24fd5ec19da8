"""Accrual ORM model: a charge placed on a plot for a period and debt category."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, Numeric, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sntbilling.models import Base, BaseModel


class AccrualCategory(str, Enum):
    """Debt categories tracked separately by reconciliation."""

    MEMBERSHIP = "membership"
    """Membership fee (членский взнос)"""

    TARGET = "target"
    """Target fee (целевой взнос)"""

    ELECTRIC = "electric"
    """Electricity"""

    @classmethod
    def normalize(cls, value: "str | AccrualCategory | None") -> "AccrualCategory | None":
        """Map legacy/free-form category names onto a category, or None."""
        if value is None:
            return None
        if isinstance(value, AccrualCategory):
            return value
        key = str(value).strip().lower()
        return _CATEGORY_ALIASES.get(key)


_CATEGORY_ALIASES = {
    "membership": AccrualCategory.MEMBERSHIP,
    "membership_fee": AccrualCategory.MEMBERSHIP,
    "target": AccrualCategory.TARGET,
    "target_fee": AccrualCategory.TARGET,
    "electric": AccrualCategory.ELECTRIC,
    "electricity": AccrualCategory.ELECTRIC,
}


class AccrualItem(Base, BaseModel):
    """Charge for (period, plot, category).

    amount_paid is a denormalized running total. Reconciliation writes the
    payment ledger sum into it and remembers that sum in reconciled_paid;
    while the two agree, amount_paid follows the ledger (a voided payment
    lowers it again). Any other value came from outside the ledger.
    amount_paid may exceed amount_accrued when the plot overpaid that
    category; the excess is reported as credit and never netted against
    another category.
    """

    __tablename__ = "accrual_items"

    period_id: Mapped[int] = mapped_column(
        ForeignKey("billing_periods.id"),
        nullable=False,
        index=True,
    )
    plot_id: Mapped[int] = mapped_column(
        ForeignKey("plots.id"),
        nullable=False,
        index=True,
    )
    category: Mapped[AccrualCategory] = mapped_column(
        SQLEnum(AccrualCategory),
        nullable=False,
    )
    amount_accrued: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Accrued amount in rubles",
    )
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Paid total recorded by reconciliation",
    )
    reconciled_paid: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Ledger sum last written to amount_paid by reconciliation",
    )
    accrued_on: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Date the charge became due; days overdue count from here",
    )

    period: Mapped["BillingPeriod"] = relationship(  # noqa: F821
        "BillingPeriod",
        back_populates="accruals",
        foreign_keys=[period_id],
    )
    plot: Mapped["Plot"] = relationship(  # noqa: F821
        "Plot",
        foreign_keys=[plot_id],
    )

    __table_args__ = (
        UniqueConstraint("period_id", "plot_id", "category", name="uq_accrual_period_plot_category"),
        CheckConstraint("amount_accrued >= 0", name="ck_accrual_accrued_non_negative"),
        CheckConstraint("amount_paid >= 0", name="ck_accrual_paid_non_negative"),
        Index("idx_accrual_period_plot", "period_id", "plot_id"),
    )

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0"), self.amount_accrued - self.amount_paid)

    def __repr__(self) -> str:
        return (
            f"<AccrualItem(id={self.id}, period_id={self.period_id}, plot_id={self.plot_id}, "
            f"category={self.category}, accrued={self.amount_accrued}, paid={self.amount_paid})>"
        )


__all__ = ["AccrualCategory", "AccrualItem"]
