"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from sntbilling.models.accrual import AccrualCategory, AccrualItem  # noqa: E402
from sntbilling.models.audit_log import AuditLog  # noqa: E402
from sntbilling.models.billing_period import BillingPeriod, PeriodStatus  # noqa: E402
from sntbilling.models.payment import MatchType, Payment, PaymentSource  # noqa: E402
from sntbilling.models.payment_import import ImportStatus, PaymentImport  # noqa: E402
from sntbilling.models.penalty_accrual import PenaltyAccrual, PenaltyStatus  # noqa: E402
from sntbilling.models.plot import Person, Plot  # noqa: E402

__all__ = [
    "Base",
    "BaseModel",
    "AccrualCategory",
    "AccrualItem",
    "AuditLog",
    "BillingPeriod",
    "PeriodStatus",
    "ImportStatus",
    "MatchType",
    "Payment",
    "PaymentImport",
    "PaymentSource",
    "PenaltyAccrual",
    "PenaltyStatus",
    "Person",
    "Plot",
]
