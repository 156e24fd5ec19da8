"""Audit log model for money-affecting billing events."""

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from sntbilling.models import Base, BaseModel


class AuditLog(Base, BaseModel):
    """Audit log entry.

    Records who (actor_id) did what (action) to which entities
    (target_type, target_ids) within which request (request_id), plus a JSON
    snapshot of the inputs and outcome (details).
    """

    __tablename__ = "audit_logs"

    action: Mapped[str] = mapped_column(String(100), index=True)
    """Action performed: "penalty.apply", "period.close", etc."""

    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    """Operator who performed the action. None for system actions."""

    request_id: Mapped[str] = mapped_column(String(64), index=True)
    """Correlation id of the operator request."""

    target_type: Mapped[str] = mapped_column(String(50))
    """Entity type affected: "penalty_accrual", "billing_period", "payment", ..."""

    target_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    """Keys of the affected entities (ids or "plot:period" keys)."""

    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    """Inputs and outcome: rates, counts, policy version, post-close override."""

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, action={self.action}, actor_id={self.actor_id}, "
            f"request_id={self.request_id}, target_type={self.target_type})>"
        )


__all__ = ["AuditLog"]
