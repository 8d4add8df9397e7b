# Overview: Inventory movement use cases over the append-only stock journal.

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError, DependencyError, NotFoundError, ValidationError
from ..events import (
    SaleStockDeductedV1,
    SaleStockRedeductedV1,
    SaleStockRestoredV1,
    StockCorrectedV1,
    StockLine,
    StockReceivedV1,
    StockWastedV1,
)
from ..models import Branch, BranchStock, InventoryJournalEntry, MenuStockMap, StockItem
from ..time_utils import parse_iso_datetime
from .audit_service import AuditEntry, AuditWriter
from .balance_service import BalanceProjector
from .concurrency import run_with_retry
from .ledger_service import inventory_ledger
from .outbox_service import OutboxPublisher
from .transaction import TransactionManager

logger = logging.getLogger(__name__)

"""
Inventory Invariants & Sign Convention (authoritative)

Inventory model:
- Stock on hand is ledger-derived from inventory_journal rows; never stored
  as a mutable quantity field.
- On hand = SUM(delta) for (tenant_id, branch_id, stock_item_id), optionally as-of.

Sign convention (applied here, never by callers):
- receive  +qty   item assigned to branch, qty > 0
- waste    -qty   item assigned to branch, qty > 0, note required
- correction +/-delta  item assigned to branch, delta != 0, note required
- sale     -qty per line
- void     +qty per line, exactly what the sale recorded
- reopen   -qty per line

Atomicity:
- Multi-line operations append every line and one consolidated event in one
  transaction, or nothing.
- Validation happens before any write.
- The use cases are not idempotent. Duplicate suppression belongs to callers
  (see services.subscribers).
- On hand may go negative (a sale is never refused for stock); negative
  balances surface through inventory_exceptions().
"""

QTY_QUANTUM = Decimal("0.001")
DEFAULT_PAGE_SIZE = 20


def to_quantity(value, field_name: str = "qty") -> Decimal:
    if value is None:
        raise ValidationError(f"{field_name} is required")
    if isinstance(value, (bool, float)):
        raise ValidationError(f"{field_name} must be a decimal string or integer")
    try:
        qty = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a number")
    if not qty.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    if qty != qty.quantize(QTY_QUANTUM):
        raise ValidationError(f"{field_name} cannot have more than 3 decimal places")
    return qty.quantize(QTY_QUANTUM)


def _require_note(note: str | None, operation: str) -> str:
    text = (note or "").strip()
    if not text:
        raise ValidationError(f"A note is required for {operation}")
    return text


class InventoryService:
    def __init__(
        self,
        tx: TransactionManager,
        audit: AuditWriter,
        outbox: OutboxPublisher,
        projector: BalanceProjector,
    ):
        self.tx = tx
        self.audit = audit
        self.outbox = outbox
        self.projector = projector

    def _write(self, fn, session: Session | None = None):
        if session is not None:
            return fn(session)
        return run_with_retry(lambda: self.tx.with_transaction(fn))

    # =========================================================================
    # CATALOG & BRANCH ASSIGNMENT
    # =========================================================================

    def _load_item(self, s: Session, tenant_id: int, stock_item_id: int) -> StockItem:
        item = s.scalars(
            select(StockItem).where(StockItem.id == stock_item_id, StockItem.tenant_id == tenant_id)
        ).first()
        if item is None:
            raise NotFoundError("Stock item", stock_item_id)
        return item

    def _require_assigned(self, s: Session, tenant_id: int, branch_id: int, stock_item_id: int) -> BranchStock:
        self._load_item(s, tenant_id, stock_item_id)
        assignment = s.scalars(
            select(BranchStock).where(
                BranchStock.tenant_id == tenant_id,
                BranchStock.branch_id == branch_id,
                BranchStock.stock_item_id == stock_item_id,
            )
        ).first()
        if assignment is None:
            raise ValidationError(f"Stock item {stock_item_id} is not assigned to branch {branch_id}")
        return assignment

    def _require_items(self, s: Session, tenant_id: int, stock_item_ids: set[int]) -> None:
        found = set(
            s.scalars(
                select(StockItem.id).where(StockItem.tenant_id == tenant_id, StockItem.id.in_(stock_item_ids))
            )
        )
        missing = stock_item_ids - found
        if missing:
            raise NotFoundError("Stock item", ", ".join(str(i) for i in sorted(missing)))

    def create_stock_item(
        self,
        tenant_id: int,
        name: str,
        unit_text: str = "pcs",
        barcode: str | None = None,
    ) -> StockItem:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Stock item name is required")
        unit_text = (unit_text or "").strip() or "pcs"

        def _op(s: Session) -> StockItem:
            duplicate = s.scalars(
                select(StockItem.id).where(StockItem.tenant_id == tenant_id, StockItem.name == name)
            ).first()
            if duplicate is not None:
                raise ConflictError(f"Stock item '{name}' already exists")

            item = StockItem(tenant_id=tenant_id, name=name, unit_text=unit_text, barcode=barcode, is_active=True)
            s.add(item)
            s.flush()
            return item

        return self._write(_op)

    def assign_stock_item_to_branch(
        self,
        tenant_id: int,
        branch_id: int,
        stock_item_id: int,
        min_threshold=0,
    ) -> BranchStock:
        threshold = to_quantity(min_threshold, "min_threshold")
        if threshold < 0:
            raise ValidationError("min_threshold cannot be negative")

        def _op(s: Session) -> BranchStock:
            branch = s.scalars(select(Branch).where(Branch.id == branch_id, Branch.tenant_id == tenant_id)).first()
            if branch is None:
                raise NotFoundError("Branch", branch_id)
            self._load_item(s, tenant_id, stock_item_id)

            existing = s.scalars(
                select(BranchStock).where(
                    BranchStock.tenant_id == tenant_id,
                    BranchStock.branch_id == branch_id,
                    BranchStock.stock_item_id == stock_item_id,
                )
            ).first()
            if existing is not None:
                raise ConflictError(f"Stock item {stock_item_id} is already assigned to branch {branch_id}")

            assignment = BranchStock(
                tenant_id=tenant_id, branch_id=branch_id, stock_item_id=stock_item_id, min_threshold=threshold
            )
            s.add(assignment)
            try:
                s.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Stock item {stock_item_id} is already assigned to branch {branch_id}") from exc
            return assignment

        return self._write(_op)

    def set_branch_threshold(self, tenant_id: int, branch_id: int, stock_item_id: int, min_threshold) -> BranchStock:
        threshold = to_quantity(min_threshold, "min_threshold")
        if threshold < 0:
            raise ValidationError("min_threshold cannot be negative")

        def _op(s: Session) -> BranchStock:
            assignment = self._require_assigned(s, tenant_id, branch_id, stock_item_id)
            assignment.min_threshold = threshold
            s.flush()
            return assignment

        return self._write(_op)

    # =========================================================================
    # MENU -> STOCK MAPPING
    # =========================================================================

    def set_menu_stock_mapping(
        self,
        tenant_id: int,
        menu_item_id: str,
        stock_item_id: int,
        qty_per_sale,
        *,
        actor_id: int | None = None,
    ) -> MenuStockMap:
        """Upsert how much of a stock item one unit of a menu item consumes."""
        menu_item_id = str(menu_item_id or "").strip()
        if not menu_item_id:
            raise ValidationError("menu_item_id is required")
        qty = to_quantity(qty_per_sale, "qty_per_sale")
        if qty <= 0:
            raise ValidationError("qty_per_sale must be greater than zero")

        def _op(s: Session) -> MenuStockMap:
            item = s.scalars(
                select(StockItem).where(StockItem.id == stock_item_id, StockItem.tenant_id == tenant_id)
            ).first()
            if item is None:
                raise DependencyError(f"Stock item {stock_item_id} not found in inventory")

            mapping = s.scalars(
                select(MenuStockMap).where(
                    MenuStockMap.tenant_id == tenant_id,
                    MenuStockMap.menu_item_id == menu_item_id,
                    MenuStockMap.stock_item_id == stock_item_id,
                )
            ).first()
            previous = str(mapping.qty_per_sale) if mapping is not None else None
            if mapping is None:
                mapping = MenuStockMap(tenant_id=tenant_id, menu_item_id=menu_item_id, stock_item_id=stock_item_id)
                s.add(mapping)
            mapping.qty_per_sale = qty
            s.flush()

            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    employee_id=actor_id,
                    action_type="MENU_STOCK_MAP_UPDATED",
                    resource_type="menu_item",
                    resource_id=menu_item_id,
                    details={
                        "stock_item_id": stock_item_id,
                        "qty_per_sale": str(qty),
                        "previous_qty_per_sale": previous,
                    },
                ),
                s,
            )
            return mapping

        return self._write(_op)

    def remove_menu_stock_mapping(self, tenant_id: int, menu_item_id: str, stock_item_id: int) -> bool:
        def _op(s: Session) -> bool:
            mapping = s.scalars(
                select(MenuStockMap).where(
                    MenuStockMap.tenant_id == tenant_id,
                    MenuStockMap.menu_item_id == str(menu_item_id),
                    MenuStockMap.stock_item_id == stock_item_id,
                )
            ).first()
            if mapping is None:
                return False
            s.delete(mapping)
            return True

        return self._write(_op)

    def menu_stock_mappings(self, s: Session, tenant_id: int, menu_item_id: str) -> list[MenuStockMap]:
        stmt = (
            select(MenuStockMap)
            .where(MenuStockMap.tenant_id == tenant_id, MenuStockMap.menu_item_id == str(menu_item_id))
            .order_by(MenuStockMap.id.asc())
        )
        return list(s.scalars(stmt))

    # =========================================================================
    # SINGLE-ITEM MOVEMENTS
    # =========================================================================

    def _append_single(
        self,
        s: Session,
        *,
        event_cls,
        tenant_id: int,
        branch_id: int,
        stock_item_id: int,
        delta: Decimal,
        reason: str,
        note: str | None,
        actor_id: int | None,
        occurred_at,
    ) -> InventoryJournalEntry:
        entry = inventory_ledger.append(
            s,
            tenant_id=tenant_id,
            branch_id=branch_id,
            stock_item_id=stock_item_id,
            delta=delta,
            reason=reason,
            note=note,
            actor_id=actor_id,
            occurred_at=occurred_at,
        )
        self.outbox.publish(
            event_cls(
                tenant_id=tenant_id,
                branch_id=branch_id,
                entry_id=entry.id,
                stock_item_id=stock_item_id,
                delta=entry.delta,
                actor_id=actor_id,
                note=note,
                occurred_at=entry.occurred_at,
            ),
            s,
        )
        return entry

    def receive_stock(
        self,
        tenant_id: int,
        branch_id: int,
        stock_item_id: int,
        qty,
        *,
        actor_id: int | None = None,
        note: str | None = None,
        occurred_at=None,
        session: Session | None = None,
    ) -> InventoryJournalEntry:
        quantity = to_quantity(qty)
        if quantity <= 0:
            raise ValidationError("qty must be greater than zero")

        def _op(s: Session) -> InventoryJournalEntry:
            self._require_assigned(s, tenant_id, branch_id, stock_item_id)
            return self._append_single(
                s,
                event_cls=StockReceivedV1,
                tenant_id=tenant_id,
                branch_id=branch_id,
                stock_item_id=stock_item_id,
                delta=quantity,
                reason="receive",
                note=(note or "").strip() or None,
                actor_id=actor_id,
                occurred_at=occurred_at,
            )

        return self._write(_op, session)

    def waste_stock(
        self,
        tenant_id: int,
        branch_id: int,
        stock_item_id: int,
        qty,
        note: str | None,
        *,
        actor_id: int | None = None,
        occurred_at=None,
        session: Session | None = None,
    ) -> InventoryJournalEntry:
        quantity = to_quantity(qty)
        if quantity <= 0:
            raise ValidationError("qty must be greater than zero")
        note_text = _require_note(note, "waste")

        def _op(s: Session) -> InventoryJournalEntry:
            self._require_assigned(s, tenant_id, branch_id, stock_item_id)
            entry = self._append_single(
                s,
                event_cls=StockWastedV1,
                tenant_id=tenant_id,
                branch_id=branch_id,
                stock_item_id=stock_item_id,
                delta=-quantity,
                reason="waste",
                note=note_text,
                actor_id=actor_id,
                occurred_at=occurred_at,
            )
            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=branch_id,
                    employee_id=actor_id,
                    action_type="INVENTORY_WASTE_RECORDED",
                    resource_type="stock_item",
                    resource_id=stock_item_id,
                    details={"entry_id": entry.id, "qty": str(quantity), "note": note_text},
                ),
                s,
            )
            return entry

        return self._write(_op, session)

    def correct_stock(
        self,
        tenant_id: int,
        branch_id: int,
        stock_item_id: int,
        delta,
        note: str | None,
        *,
        actor_id: int | None = None,
        occurred_at=None,
        session: Session | None = None,
    ) -> InventoryJournalEntry:
        """Signed adjustment. Corrections append; they never edit history."""
        signed = to_quantity(delta, "delta")
        if signed == 0:
            raise ValidationError("Correction delta cannot be zero")
        note_text = _require_note(note, "correction")

        def _op(s: Session) -> InventoryJournalEntry:
            self._require_assigned(s, tenant_id, branch_id, stock_item_id)
            entry = self._append_single(
                s,
                event_cls=StockCorrectedV1,
                tenant_id=tenant_id,
                branch_id=branch_id,
                stock_item_id=stock_item_id,
                delta=signed,
                reason="correction",
                note=note_text,
                actor_id=actor_id,
                occurred_at=occurred_at,
            )
            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=branch_id,
                    employee_id=actor_id,
                    action_type="INVENTORY_STOCK_CORRECTED",
                    resource_type="stock_item",
                    resource_id=stock_item_id,
                    details={"entry_id": entry.id, "delta": str(signed), "note": note_text},
                ),
                s,
            )
            return entry

        return self._write(_op, session)

    # =========================================================================
    # SALE-LINKED BATCHES
    # =========================================================================

    def _normalize_lines(self, lines: Iterable) -> list[tuple[int, Decimal]]:
        normalized = []
        for line in lines:
            if isinstance(line, StockLine):
                stock_item_id, qty = line.stock_item_id, line.qty
            else:
                stock_item_id, qty = line
            quantity = to_quantity(qty)
            if quantity <= 0:
                raise ValidationError(f"qty must be greater than zero (stock item {stock_item_id})")
            normalized.append((int(stock_item_id), quantity))
        if not normalized:
            raise ValidationError("At least one line is required")
        return normalized

    def _append_batch(
        self,
        *,
        event_cls,
        reason: str,
        sign: int,
        tenant_id: int,
        branch_id: int,
        ref_sale_id: str,
        lines: Iterable,
        actor_id: int | None,
        session: Session | None,
    ) -> list[InventoryJournalEntry]:
        ref_sale_id = str(ref_sale_id or "").strip()
        if not ref_sale_id:
            raise ValidationError("ref_sale_id is required")
        normalized = self._normalize_lines(lines)

        def _op(s: Session) -> list[InventoryJournalEntry]:
            self._require_items(s, tenant_id, {stock_item_id for stock_item_id, _ in normalized})

            entries = [
                inventory_ledger.append(
                    s,
                    tenant_id=tenant_id,
                    branch_id=branch_id,
                    stock_item_id=stock_item_id,
                    delta=qty * sign,
                    reason=reason,
                    ref_sale_id=ref_sale_id,
                    actor_id=actor_id,
                )
                for stock_item_id, qty in normalized
            ]
            self.outbox.publish(
                event_cls(
                    tenant_id=tenant_id,
                    branch_id=branch_id,
                    ref_sale_id=ref_sale_id,
                    actor_id=actor_id,
                    lines=tuple(
                        StockLine(stock_item_id=e.stock_item_id, qty=abs(e.delta), entry_id=e.id) for e in entries
                    ),
                ),
                s,
            )
            return entries

        entries = self._write(_op, session)
        logger.info("Recorded %d %s entries for sale %s", len(entries), reason, ref_sale_id)
        return entries

    def record_sale_deductions(
        self,
        tenant_id: int,
        branch_id: int,
        ref_sale_id: str,
        lines: Iterable,
        *,
        actor_id: int | None = None,
        session: Session | None = None,
    ) -> list[InventoryJournalEntry]:
        """Deduct every line of a sale (-qty each) with one consolidated event."""
        return self._append_batch(
            event_cls=SaleStockDeductedV1, reason="sale", sign=-1,
            tenant_id=tenant_id, branch_id=branch_id, ref_sale_id=ref_sale_id,
            lines=lines, actor_id=actor_id, session=session,
        )

    def record_void(
        self,
        tenant_id: int,
        branch_id: int,
        ref_sale_id: str,
        lines: Iterable,
        *,
        actor_id: int | None = None,
        session: Session | None = None,
    ) -> list[InventoryJournalEntry]:
        """Restore a voided sale's deductions (+qty each)."""
        return self._append_batch(
            event_cls=SaleStockRestoredV1, reason="void", sign=1,
            tenant_id=tenant_id, branch_id=branch_id, ref_sale_id=ref_sale_id,
            lines=lines, actor_id=actor_id, session=session,
        )

    def record_reopen(
        self,
        tenant_id: int,
        branch_id: int,
        new_sale_id: str,
        lines: Iterable,
        *,
        actor_id: int | None = None,
        session: Session | None = None,
    ) -> list[InventoryJournalEntry]:
        """Re-deduct (-qty each) for the sale that replaces a voided one."""
        return self._append_batch(
            event_cls=SaleStockRedeductedV1, reason="reopen", sign=-1,
            tenant_id=tenant_id, branch_id=branch_id, ref_sale_id=new_sale_id,
            lines=lines, actor_id=actor_id, session=session,
        )

    def sale_entries(self, s: Session, tenant_id: int, ref_sale_id: str, reasons: tuple[str, ...]) -> list:
        stmt = (
            select(InventoryJournalEntry)
            .where(
                InventoryJournalEntry.tenant_id == tenant_id,
                InventoryJournalEntry.ref_sale_id == str(ref_sale_id),
                InventoryJournalEntry.reason.in_(reasons),
            )
            .order_by(InventoryJournalEntry.id.asc())
        )
        return list(s.scalars(stmt))

    # =========================================================================
    # READS
    # =========================================================================

    def on_hand(self, tenant_id: int, branch_id: int, stock_item_id: int, *, as_of=None) -> Decimal:
        if isinstance(as_of, str):
            try:
                as_of = parse_iso_datetime(as_of)
            except ValueError:
                raise ValidationError("as_of must be an ISO-8601 datetime")
        return self.projector.on_hand(tenant_id, branch_id, stock_item_id, as_of=as_of)

    def get_journal(
        self,
        tenant_id: int,
        branch_id: int,
        *,
        stock_item_id: int | None = None,
        reason: str | None = None,
        ref_sale_id: str | None = None,
        occurred_from=None,
        occurred_to=None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        if reason is not None and reason not in inventory_ledger.reasons:
            raise ValidationError(f"reason must be one of {', '.join(inventory_ledger.reasons)}")
        try:
            if isinstance(occurred_from, str):
                occurred_from = parse_iso_datetime(occurred_from)
            if isinstance(occurred_to, str):
                occurred_to = parse_iso_datetime(occurred_to)
        except ValueError:
            raise ValidationError("Invalid date range")

        def _op(s: Session) -> dict:
            # One extra row tells us whether another page exists
            entries = inventory_ledger.query(
                s, tenant_id, branch_id, stock_item_id,
                reason=reason,
                ref_sale_id=ref_sale_id,
                occurred_from=occurred_from,
                occurred_to=occurred_to,
                limit=page_size + 1,
                offset=(page - 1) * page_size,
            )
            has_more = len(entries) > page_size
            return {
                "entries": [e.to_dict() for e in entries[:page_size]],
                "page": page,
                "page_size": page_size,
                "next_page": page + 1 if has_more else None,
            }

        return self.tx.with_transaction(_op)
