"""SNT billing reconciliation and penalty accrual engine."""

__version__ = "0.1.0"
