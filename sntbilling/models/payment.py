"""Payment ORM model: a single money movement, append-only."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sntbilling.models import Base, BaseModel
from sntbilling.models.accrual import AccrualCategory


class PaymentSource(str, Enum):
    """Where the payment record came from."""

    MANUAL = "manual"
    IMPORT = "import"


class MatchType(str, Enum):
    """Which strategy attributed the payment to its plot."""

    PLOT_NUMBER = "plot_number"
    PHONE = "phone"
    FULL_NAME = "full_name"
    MANUAL = "manual"


class Payment(Base, BaseModel):
    """Model representing a payment.

    The amount and date are never edited. A payment can only be voided, or,
    while still unmatched, attributed to a plot once.
    """

    __tablename__ = "payments"

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Payment amount in rubles",
    )
    paid_at: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
        comment="Date of payment",
    )

    # Attribution (nullable until matched)
    plot_id: Mapped[int | None] = mapped_column(
        ForeignKey("plots.id"),
        nullable=True,
        index=True,
    )
    period_id: Mapped[int | None] = mapped_column(
        ForeignKey("billing_periods.id"),
        nullable=True,
        index=True,
    )
    category: Mapped[AccrualCategory | None] = mapped_column(
        SQLEnum(AccrualCategory),
        nullable=True,
    )
    match_type: Mapped[MatchType | None] = mapped_column(
        SQLEnum(MatchType),
        nullable=True,
        comment="Matcher strategy that resolved the plot",
    )

    # Deduplication
    fingerprint: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Content hash (or external id hash) used for at-most-once import",
    )
    fingerprint_version: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )
    external_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Bank transaction id, when the source provides one",
    )

    source: Mapped[PaymentSource] = mapped_column(
        SQLEnum(PaymentSource),
        nullable=False,
        default=PaymentSource.MANUAL,
    )
    import_id: Mapped[int | None] = mapped_column(
        ForeignKey("payment_imports.id"),
        nullable=True,
        index=True,
    )

    # Raw row values kept for audit and later re-matching
    plot_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Soft delete
    is_voided: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    voided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    plot: Mapped["Plot | None"] = relationship(  # noqa: F821
        "Plot",
        foreign_keys=[plot_id],
    )
    period: Mapped["BillingPeriod | None"] = relationship(  # noqa: F821
        "BillingPeriod",
        foreign_keys=[period_id],
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        Index("idx_payment_plot_period", "plot_id", "period_id"),
        Index("idx_payment_plot_date", "plot_id", "paid_at"),
    )

    @property
    def is_matched(self) -> bool:
        return self.plot_id is not None

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, plot_id={self.plot_id}, amount={self.amount}, "
            f"paid_at={self.paid_at}, category={self.category}, voided={self.is_voided})>"
        )


__all__ = ["MatchType", "Payment", "PaymentSource"]
