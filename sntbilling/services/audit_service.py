"""Audit service for logging money-affecting billing events."""

import uuid

from sqlalchemy.orm import Session

from sntbilling.models.audit_log import AuditLog


def generate_request_id() -> str:
    """New correlation id for an operator request."""
    return uuid.uuid4().hex


class AuditService:
    """Service for audit log operations."""

    @staticmethod
    def log_event(
        db: Session,
        action: str,
        target_type: str,
        target_ids: list[str],
        actor_id: str | None = None,
        request_id: str | None = None,
        details: dict | None = None,
    ) -> AuditLog:
        """Add an audit log entry to the session.

        The entry is flushed together with the caller's writes, so it commits
        or rolls back with them.

        Args:
            db: Database session
            action: Action performed ("penalty.apply", "period.close", etc.)
            target_type: Type of entities affected ("penalty_accrual", ...)
            target_ids: Keys of the affected entities
            actor_id: Operator who performed the action (optional)
            request_id: Correlation id; generated when omitted
            details: JSON snapshot of inputs and outcome

        Returns:
            Created AuditLog object
        """
        audit = AuditLog(
            action=action,
            actor_id=actor_id,
            request_id=request_id or generate_request_id(),
            target_type=target_type,
            target_ids=[str(t) for t in target_ids],
            details=details,
        )
        db.add(audit)
        return audit

    @staticmethod
    def list_events(db: Session, action: str | None = None) -> list[AuditLog]:
        """List audit entries, newest first, optionally filtered by action."""
        query = db.query(AuditLog)
        if action:
            query = query.filter(AuditLog.action == action)
        return query.order_by(AuditLog.id.desc()).all()


__all__ = ["AuditService", "generate_request_id"]
