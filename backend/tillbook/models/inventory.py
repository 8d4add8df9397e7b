from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

"""
Inventory Invariants (authoritative)

- Stock on hand is ledger-derived from InventoryJournalEntry rows; it is never
  stored as a mutable quantity field.
- On hand = SUM(delta) for (tenant_id, branch_id, stock_item_id), optionally as-of.
- Journal rows are append-only. Corrections append a new signed row.
- Sign convention: receive/void are positive, sale/waste/reopen are negative,
  correction is either sign but never zero.
"""

INVENTORY_REASONS = ("receive", "waste", "correction", "sale", "void", "reopen")

QUANTITY = db.Numeric(14, 3)


class StockItem(db.Model):
    """
    Tenant-scoped stock-tracked item (ingredient, packaged good, ...).

    Stock items are catalog data only; quantities live in the journal.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_stock_items_tenant_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)

    name = db.Column(db.String(128), nullable=False)
    unit_text = db.Column(db.String(16), nullable=False, default="pcs")  # pcs, kg, liter
    barcode = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "unit_text": self.unit_text,
            "barcode": self.barcode,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class BranchStock(db.Model):
    """
    Assignment of a stock item to a branch, with its low-stock threshold.

    An item must be assigned before receive/waste/correction can post
    against it at that branch.
    """
    __tablename__ = "branch_stock"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "branch_id", "stock_item_id", name="uq_branch_stock_item"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey("stock_items.id"), nullable=False, index=True)

    min_threshold = db.Column(QUANTITY, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "stock_item_id": self.stock_item_id,
            "min_threshold": str(self.min_threshold),
            "created_at": to_utc_z(self.created_at),
        }


class InventoryJournalEntry(db.Model):
    """
    One signed stock movement. Immutable once flushed.
    """
    __tablename__ = "inventory_journal"
    __table_args__ = (
        db.Index("ix_invjournal_scope_occurred", "tenant_id", "branch_id", "stock_item_id", "occurred_at"),
        db.Index("ix_invjournal_ref_sale", "tenant_id", "ref_sale_id", "reason"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey("stock_items.id"), nullable=False, index=True)

    delta = db.Column(QUANTITY, nullable=False)
    reason = db.Column(db.String(16), nullable=False, index=True)

    ref_sale_id = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)  # null for system entries (void/reopen)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "stock_item_id": self.stock_item_id,
            "delta": str(self.delta),
            "reason": self.reason,
            "ref_sale_id": self.ref_sale_id,
            "note": self.note,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class MenuStockMap(db.Model):
    """
    Links a sellable menu item to the stock it consumes.

    qty_per_sale is a positive quantity of stock consumed per unit sold;
    the deduction use case applies the sign.
    """
    __tablename__ = "menu_stock_map"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "menu_item_id", "stock_item_id", name="uq_menu_stock_map"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    menu_item_id = db.Column(db.String(64), nullable=False, index=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey("stock_items.id"), nullable=False)
    qty_per_sale = db.Column(QUANTITY, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "menu_item_id": self.menu_item_id,
            "stock_item_id": self.stock_item_id,
            "qty_per_sale": str(self.qty_per_sale),
            "created_at": to_utc_z(self.created_at),
        }
