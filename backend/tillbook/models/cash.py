from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

# Session lifecycle
SESSION_OPEN = "OPEN"
SESSION_CLOSED = "CLOSED"
SESSION_PENDING_REVIEW = "PENDING_REVIEW"
SESSION_APPROVED = "APPROVED"
SESSION_STATUSES = (SESSION_OPEN, SESSION_CLOSED, SESSION_PENDING_REVIEW, SESSION_APPROVED)

# Movement types; the sign each one carries in the ledger
CASH_MOVEMENT_TYPES = ("SALE_CASH", "REFUND_CASH", "PAID_IN", "PAID_OUT", "ADJUSTMENT")
CASH_INCREASING = ("SALE_CASH", "PAID_IN")
CASH_DECREASING = ("REFUND_CASH", "PAID_OUT")

MOVEMENT_APPROVED = "APPROVED"
MOVEMENT_PENDING = "PENDING"
MOVEMENT_REJECTED = "REJECTED"

MONEY = db.Numeric(14, 2)


class CashRegister(db.Model):
    """
    Physical till/terminal at a branch.

    Registers are never deleted; inactive registers cannot open sessions.
    """
    __tablename__ = "cash_registers"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "branch_id", "name", name="uq_cash_registers_branch_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE, INACTIVE

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "name": self.name,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class CashSession(db.Model):
    """
    Till session (shift) tracking.

    LIFECYCLE:
    - OPEN: movements may be recorded, responsibility may be taken over
    - CLOSED: counted, variance within threshold
    - PENDING_REVIEW: counted, variance beyond threshold, awaiting a manager
    - APPROVED: reviewed (terminal)

    Expected cash is never kept as a running column while OPEN; it is
    summed from cash_movements and frozen into expected_cash_* at close.

    At most one OPEN session per (tenant, register), or per (tenant, branch)
    for branch-scoped sessions; the partial unique indexes below back the
    lookup done by the open use case.
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        db.Index(
            "uq_cash_sessions_open_register",
            "tenant_id", "register_id",
            unique=True,
            sqlite_where=db.text("status = 'OPEN' AND register_id IS NOT NULL"),
            postgresql_where=db.text("status = 'OPEN' AND register_id IS NOT NULL"),
        ),
        db.Index(
            "uq_cash_sessions_open_branch",
            "tenant_id", "branch_id",
            unique=True,
            sqlite_where=db.text("status = 'OPEN' AND register_id IS NULL"),
            postgresql_where=db.text("status = 'OPEN' AND register_id IS NULL"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    register_id = db.Column(db.Integer, db.ForeignKey("cash_registers.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=SESSION_OPEN, index=True)

    opened_by = db.Column(db.Integer, nullable=False)
    responsible_actor_id = db.Column(db.Integer, nullable=False)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    opening_float_usd = db.Column(MONEY, nullable=False, default=0)
    opening_float_khr = db.Column(MONEY, nullable=False, default=0)

    closed_by = db.Column(db.Integer, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expected_cash_usd = db.Column(MONEY, nullable=True)
    expected_cash_khr = db.Column(MONEY, nullable=True)
    counted_cash_usd = db.Column(MONEY, nullable=True)
    counted_cash_khr = db.Column(MONEY, nullable=True)
    variance_usd = db.Column(MONEY, nullable=True)
    variance_khr = db.Column(MONEY, nullable=True)

    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    note = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == SESSION_OPEN

    def to_dict(self) -> dict:
        def money(value):
            return str(value) if value is not None else None

        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "register_id": self.register_id,
            "status": self.status,
            "opened_by": self.opened_by,
            "responsible_actor_id": self.responsible_actor_id,
            "opened_at": to_utc_z(self.opened_at),
            "opening_float_usd": money(self.opening_float_usd),
            "opening_float_khr": money(self.opening_float_khr),
            "closed_by": self.closed_by,
            "closed_at": to_utc_z(self.closed_at),
            "expected_cash_usd": money(self.expected_cash_usd),
            "expected_cash_khr": money(self.expected_cash_khr),
            "counted_cash_usd": money(self.counted_cash_usd),
            "counted_cash_khr": money(self.counted_cash_khr),
            "variance_usd": money(self.variance_usd),
            "variance_khr": money(self.variance_khr),
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "note": self.note,
        }


class CashMovement(db.Model):
    """
    One signed cash movement within a session (the cash ledger).

    amount_usd / amount_khr are stored signed: SALE_CASH and PAID_IN are
    positive, REFUND_CASH and PAID_OUT negative, ADJUSTMENT either.
    Only APPROVED movements count toward the session's expected cash.
    Rows are immutable except for the PENDING -> APPROVED/REJECTED review.
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.Index("ix_cash_movements_scope_occurred", "tenant_id", "branch_id", "session_id", "occurred_at"),
        db.Index("ix_cash_movements_ref_sale", "tenant_id", "ref_sale_id", "type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    register_id = db.Column(db.Integer, db.ForeignKey("cash_registers.id"), nullable=True)
    session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=False, index=True)
    actor_id = db.Column(db.Integer, nullable=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=MOVEMENT_APPROVED)

    amount_usd = db.Column(MONEY, nullable=False, default=0)
    amount_khr = db.Column(MONEY, nullable=False, default=0)

    ref_sale_id = db.Column(db.String(64), nullable=True)
    reason = db.Column(db.String(255), nullable=True)

    reviewed_by = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "register_id": self.register_id,
            "session_id": self.session_id,
            "actor_id": self.actor_id,
            "type": self.type,
            "status": self.status,
            "amount_usd": str(self.amount_usd),
            "amount_khr": str(self.amount_khr),
            "ref_sale_id": self.ref_sale_id,
            "reason": self.reason,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }
