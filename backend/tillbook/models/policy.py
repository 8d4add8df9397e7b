from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow


class CashSessionPolicy(db.Model):
    """
    Per-tenant cash policy. Columns are nullable: NULL means "use the
    safe default" (see services.policy_service).
    """
    __tablename__ = "cash_session_policies"

    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), primary_key=True)

    require_session_for_sales = db.Column(db.Boolean, nullable=True)
    allow_paid_out = db.Column(db.Boolean, nullable=True)
    require_refund_approval = db.Column(db.Boolean, nullable=True)
    allow_manual_adjustment = db.Column(db.Boolean, nullable=True)
    paid_out_limit_usd = db.Column(db.Numeric(14, 2), nullable=True)
    paid_out_limit_khr = db.Column(db.Numeric(14, 2), nullable=True)
    variance_review_threshold_usd = db.Column(db.Numeric(14, 2), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class InventoryPolicy(db.Model):
    """
    Per-tenant inventory policy.

    branch_overrides: {"<branch_id>": {"subtract_on_finalize": bool}}
    excluded_menu_item_ids: menu items that never deduct stock.
    """
    __tablename__ = "inventory_policies"

    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), primary_key=True)

    subtract_on_finalize = db.Column(db.Boolean, nullable=False, default=True)
    branch_overrides = db.Column(db.JSON, nullable=False, default=dict)
    excluded_menu_item_ids = db.Column(db.JSON, nullable=False, default=list)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
