"""Billing period ORM model gating every financial write."""

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Date, DateTime, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sntbilling.models import Base, BaseModel


class PeriodStatus(str, Enum):
    """Lifecycle status of a billing period."""

    DRAFT = "draft"
    LOCKED = "locked"
    APPROVED = "approved"
    CLOSED = "closed"


class BillingPeriod(Base, BaseModel):
    """Model representing a billing period [start_date, end_date].

    Ranges of different periods may overlap; attribution of a date always
    picks the narrowest containing period. A closed period refuses new
    payments, accruals and penalty changes unless an override reason is given.
    """

    __tablename__ = "billing_periods"

    title: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Period title (e.g., '2025-01', 'Q1 2025')",
    )
    start_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
        comment="Period start date (inclusive)",
    )
    end_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
        comment="Period end date (inclusive)",
    )
    status: Mapped[PeriodStatus] = mapped_column(
        SQLEnum(PeriodStatus),
        nullable=False,
        default=PeriodStatus.DRAFT,
        comment="Lifecycle status: draft, locked, approved, closed",
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    closed_by: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Actor who closed the period",
    )
    close_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Aggregates captured at close time",
    )

    accruals: Mapped[list["AccrualItem"]] = relationship(  # noqa: F821
        "AccrualItem",
        back_populates="period",
    )

    @property
    def is_closed(self) -> bool:
        return self.status == PeriodStatus.CLOSED

    @property
    def length_days(self) -> int:
        return (self.end_date - self.start_date).days

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def __repr__(self) -> str:
        return (
            f"<BillingPeriod(id={self.id}, title={self.title!r}, "
            f"{self.start_date}..{self.end_date}, status={self.status})>"
        )


__all__ = ["BillingPeriod", "PeriodStatus"]
