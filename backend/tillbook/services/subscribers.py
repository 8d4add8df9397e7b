# Overview: Outbox subscribers reacting to sales events (stock deduction, sale cash).

from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal

from sqlalchemy.orm import Session

from ..events import SaleFinalizedV1, SaleReopenedV1, SaleVoidedV1
from .cash_session_service import CashSessionService
from .inventory_service import QTY_QUANTUM, InventoryService
from .outbox_service import EventBus
from .policy_service import PolicyService
from .transaction import TransactionManager

logger = logging.getLogger(__name__)

"""
Subscriber rules:
- Delivery is at-least-once, so every handler first looks in the ledger for
  entries already recorded against the sale and does nothing if found. The
  lookup and the append share one transaction.
- A handler that raises leaves the outbox row unsent; it will be retried.
"""

DEDUCTED_REASONS = ("sale", "reopen")


def _net_by_item(entries) -> list[tuple[int, Decimal]]:
    """Positive quantity per stock item from signed deduction entries, first-seen order."""
    totals: dict[int, Decimal] = defaultdict(Decimal)
    for entry in entries:
        totals[entry.stock_item_id] += -entry.delta
    return [(item_id, qty) for item_id, qty in totals.items() if qty > 0]


class InventorySaleSubscriber:
    def __init__(self, tx: TransactionManager, inventory: InventoryService, policies: PolicyService):
        self.tx = tx
        self.inventory = inventory
        self.policies = policies

    def on_sale_finalized(self, event: SaleFinalizedV1) -> None:
        def _op(s: Session) -> None:
            if self.inventory.sale_entries(s, event.tenant_id, event.sale_id, ("sale",)):
                logger.info("Sale %s already deducted; skipping redelivery", event.sale_id)
                return
            if not self.policies.should_subtract_on_sale(s, event.tenant_id, event.branch_id):
                logger.info("Auto-subtract disabled for tenant %s branch %s", event.tenant_id, event.branch_id)
                return

            lines = []
            for line in event.lines:
                if self.policies.is_menu_item_excluded(s, event.tenant_id, line.menu_item_id):
                    continue
                mappings = self.inventory.menu_stock_mappings(s, event.tenant_id, line.menu_item_id)
                if not mappings:
                    logger.warning("No stock mapping for menu item %s in sale %s", line.menu_item_id, event.sale_id)
                    continue
                for mapping in mappings:
                    lines.append((mapping.stock_item_id, (mapping.qty_per_sale * line.qty).quantize(QTY_QUANTUM)))

            if not lines:
                return
            self.inventory.record_sale_deductions(
                event.tenant_id, event.branch_id, event.sale_id, lines,
                actor_id=event.actor_id, session=s,
            )

        self.tx.with_transaction(_op)

    def on_sale_voided(self, event: SaleVoidedV1) -> None:
        """Restore exactly what the ledger recorded for the sale, not a recomputation."""
        def _op(s: Session) -> None:
            if self.inventory.sale_entries(s, event.tenant_id, event.sale_id, ("void",)):
                logger.info("Void of sale %s already restored; skipping redelivery", event.sale_id)
                return

            deducted = self.inventory.sale_entries(s, event.tenant_id, event.sale_id, DEDUCTED_REASONS)
            lines = _net_by_item(deducted)
            if not lines:
                return
            self.inventory.record_void(
                event.tenant_id, deducted[0].branch_id, event.sale_id, lines,
                actor_id=None, session=s,
            )

        self.tx.with_transaction(_op)

    def on_sale_reopened(self, event: SaleReopenedV1) -> None:
        def _op(s: Session) -> None:
            if self.inventory.sale_entries(s, event.tenant_id, event.new_sale_id, ("reopen",)):
                logger.info("Reopen %s already re-deducted; skipping redelivery", event.new_sale_id)
                return
            if not self.policies.should_subtract_on_sale(s, event.tenant_id, event.branch_id):
                return

            original = self.inventory.sale_entries(s, event.tenant_id, event.original_sale_id, DEDUCTED_REASONS)
            lines = _net_by_item(original)
            if not lines:
                logger.warning("Original sale %s has no recorded deductions; nothing to re-deduct",
                               event.original_sale_id)
                return
            self.inventory.record_reopen(
                event.tenant_id, event.branch_id, event.new_sale_id, lines,
                actor_id=None, session=s,
            )

        self.tx.with_transaction(_op)


class CashSaleSubscriber:
    def __init__(self, cash: CashSessionService):
        self.cash = cash

    def on_sale_finalized(self, event: SaleFinalizedV1) -> None:
        cash_tenders = [t for t in event.tenders if t.method.upper() == "CASH"]
        if not cash_tenders:
            return
        self.cash.record_sale_cash(
            event.tenant_id,
            event.branch_id,
            event.actor_id,
            event.sale_id,
            sum((t.amount_usd for t in cash_tenders), Decimal("0")),
            sum((t.amount_khr for t in cash_tenders), Decimal("0")),
        )

    def on_sale_voided(self, event: SaleVoidedV1) -> None:
        self.cash.record_sale_refund(event.tenant_id, event.actor_id, event.sale_id, event.reason)


def register_subscribers(bus: EventBus, inventory: InventorySaleSubscriber, cash: CashSaleSubscriber) -> None:
    bus.subscribe(SaleFinalizedV1.type, inventory.on_sale_finalized)
    bus.subscribe(SaleVoidedV1.type, inventory.on_sale_voided)
    bus.subscribe(SaleReopenedV1.type, inventory.on_sale_reopened)
    bus.subscribe(SaleFinalizedV1.type, cash.on_sale_finalized)
    bus.subscribe(SaleVoidedV1.type, cash.on_sale_voided)
