"""Billing exception taxonomy.

Row-level errors (ValidationError, DuplicatePayment, UnmatchedRow) are
collected by batch operations and returned with the counts. PeriodClosed and
NotFound abort the request before anything is written.
"""

from dataclasses import dataclass


class BillingError(Exception):
    """Base exception for billing errors."""

    code = "billing_error"


class ValidationError(BillingError):
    """Malformed input row (missing date/amount, bad number format, ...)."""

    code = "validation_error"


class DuplicatePayment(BillingError):
    """Fingerprint or external id already present; counted as skipped."""

    code = "duplicate"


class PeriodClosed(BillingError):
    """Write into a closed billing period without an override reason."""

    code = "period_closed"

    def __init__(self, period_title: str, message: str | None = None):
        self.period_title = period_title
        super().__init__(
            message or f"Period {period_title} is closed; an override reason is required"
        )


class PlotNotFound(BillingError):
    """Plot id does not exist in the registry."""

    code = "plot_not_found"


class UnmatchedRow(BillingError):
    """No matcher strategy resolved a plot; the payment stays unmatched."""

    code = "unmatched"


class NotFound(BillingError):
    """Referenced period, payment or penalty does not exist."""

    code = "not_found"


class InvalidTransition(BillingError):
    """Status change not allowed from the current status."""

    code = "invalid_transition"


@dataclass(frozen=True)
class RowError:
    """Error attached to one input row of a batch."""

    row_number: int
    code: str
    message: str

    @classmethod
    def from_exception(cls, row_number: int, exc: BillingError) -> "RowError":
        return cls(row_number=row_number, code=exc.code, message=str(exc))

    def as_dict(self) -> dict:
        return {"row_number": self.row_number, "code": self.code, "message": self.message}


__all__ = [
    "BillingError",
    "ValidationError",
    "DuplicatePayment",
    "PeriodClosed",
    "PlotNotFound",
    "UnmatchedRow",
    "NotFound",
    "InvalidTransition",
    "RowError",
]
