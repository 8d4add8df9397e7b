from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class OutboxRecord(db.Model):
    """
    Durable domain event awaiting delivery.

    Written in the same transaction as the business change it describes.
    sent_at stays NULL until the dispatcher has delivered the event to every
    subscriber. Rows are retained after delivery for audit/replay.
    """
    __tablename__ = "platform_outbox"
    __table_args__ = (
        db.Index("ix_platform_outbox_unsent", "sent_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    type = db.Column(db.String(64), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    payload = db.Column(db.JSON, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Delivery diagnostics; do not affect retry behavior
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "type": self.type,
            "version": self.version,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
            "sent_at": to_utc_z(self.sent_at),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


class AuditLog(db.Model):
    """
    Structured compliance record (corrections, force closes, take-overs...).

    Written through the audit port inside the caller's transaction, so an
    audit row exists exactly when the business change it describes does.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_tenant_occurred", "tenant_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    branch_id = db.Column(db.Integer, nullable=True)
    employee_id = db.Column(db.Integer, nullable=True)
    actor_type = db.Column(db.String(16), nullable=False, default="EMPLOYEE")  # EMPLOYEE, SYSTEM

    action_type = db.Column(db.String(64), nullable=False, index=True)
    resource_type = db.Column(db.String(64), nullable=True)
    resource_id = db.Column(db.String(64), nullable=True)
    outcome = db.Column(db.String(16), nullable=False, default="SUCCESS")
    details = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "employee_id": self.employee_id,
            "actor_type": self.actor_type,
            "action_type": self.action_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "outcome": self.outcome,
            "details": self.details,
            "occurred_at": to_utc_z(self.occurred_at),
        }
