"""Penalty accrual ORM model: interest charge on overdue debt per (plot, month)."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sntbilling.models import Base, BaseModel


class PenaltyStatus(str, Enum):
    """Status of a penalty accrual."""

    ACTIVE = "active"
    """Recalculated automatically"""

    FROZEN = "frozen"
    """Manually locked; never touched by apply/recalc"""

    VOIDED = "voided"
    """Cancelled; skipped unless a run explicitly includes voided rows"""


class PenaltyAccrual(Base, BaseModel):
    """Penalty for a plot in a month ("YYYY-MM").

    There is exactly one row per (plot_id, period); its status decides whether
    recalculation may overwrite it. Recalculation replaces amount and
    calculation wholesale and never adds to the previous amount.

    version_id is SQLAlchemy's optimistic lock: an UPDATE that was prepared
    against a row someone else changed in the meantime fails with
    StaleDataError instead of silently overwriting the newer value.
    """

    __tablename__ = "penalty_accruals"

    plot_id: Mapped[int] = mapped_column(
        ForeignKey("plots.id"),
        nullable=False,
        index=True,
    )
    period: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        index=True,
        comment="Month the penalty is charged in, YYYY-MM",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Penalty amount in rubles",
    )
    status: Mapped[PenaltyStatus] = mapped_column(
        SQLEnum(PenaltyStatus),
        nullable=False,
        default=PenaltyStatus.ACTIVE,
    )
    calculation: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="as_of, annual_rate, rate_per_day, base_debt, days_overdue, policy_version",
    )
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    frozen_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    freeze_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    unfrozen_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    unfrozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version_id: Mapped[int] = mapped_column(nullable=False, default=1)

    plot: Mapped["Plot"] = relationship(  # noqa: F821
        "Plot",
        foreign_keys=[plot_id],
    )

    __table_args__ = (
        UniqueConstraint("plot_id", "period", name="uq_penalty_plot_period"),
        Index("idx_penalty_period_status", "period", "status"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<PenaltyAccrual(id={self.id}, plot_id={self.plot_id}, period={self.period}, "
            f"amount={self.amount}, status={self.status})>"
        )


__all__ = ["PenaltyAccrual", "PenaltyStatus"]
