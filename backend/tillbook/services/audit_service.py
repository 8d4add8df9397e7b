# Overview: Audit writer port; compliance records in the caller's transaction.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import AuditLog
from ..time_utils import normalize_datetime, utcnow


@dataclass
class AuditEntry:
    tenant_id: int
    action_type: str
    branch_id: int | None = None
    employee_id: int | None = None
    actor_type: str = "EMPLOYEE"
    resource_type: str | None = None
    resource_id: str | int | None = None
    outcome: str = "SUCCESS"
    details: dict = field(default_factory=dict)
    occurred_at: datetime | None = None


class AuditWriter:
    def write(self, entry: AuditEntry, session: Session) -> AuditLog:
        """Insert through the given session; never commits."""
        row = AuditLog(
            tenant_id=entry.tenant_id,
            branch_id=entry.branch_id,
            employee_id=entry.employee_id,
            actor_type=entry.actor_type,
            action_type=entry.action_type,
            resource_type=entry.resource_type,
            resource_id=str(entry.resource_id) if entry.resource_id is not None else None,
            outcome=entry.outcome,
            details=entry.details or None,
            occurred_at=normalize_datetime(entry.occurred_at),
            created_at=utcnow(),
        )
        session.add(row)
        session.flush()
        return row

    def list_for_resource(self, session: Session, tenant_id: int, resource_type: str, resource_id) -> list[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(
                AuditLog.tenant_id == tenant_id,
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == str(resource_id),
            )
            .order_by(AuditLog.occurred_at.asc(), AuditLog.id.asc())
        )
        return list(session.scalars(stmt))
