# Overview: Service container; wires ports into the use cases once per app.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .audit_service import AuditWriter
from .balance_service import BalanceProjector
from .cash_session_service import CashSessionService
from .inventory_service import InventoryService
from .outbox_service import EventBus, OutboxDispatcher, OutboxPublisher
from .policy_service import PolicyService
from .register_service import RegisterService
from .subscribers import CashSaleSubscriber, InventorySaleSubscriber, register_subscribers
from .transaction import TransactionManager


@dataclass
class Services:
    tx: TransactionManager
    policies: PolicyService
    audit: AuditWriter
    outbox: OutboxPublisher
    bus: EventBus
    projector: BalanceProjector
    registers: RegisterService
    cash: CashSessionService
    inventory: InventoryService
    dispatcher: OutboxDispatcher


def build_services(config: dict, *, engine=None, outbox: OutboxPublisher | None = None) -> Services:
    """
    Construct every service with its collaborators injected.

    `outbox` lets callers substitute the publisher (tests use this to
    simulate a failing outbox write).
    """
    tx = TransactionManager(engine)
    policies = PolicyService(
        default_variance_threshold_usd=Decimal(str(config.get("CASH_VARIANCE_REVIEW_THRESHOLD_USD", "5.00"))),
        default_subtract_on_finalize=bool(config.get("INVENTORY_SUBTRACT_ON_FINALIZE", True)),
    )
    audit = AuditWriter()
    outbox = outbox or OutboxPublisher()
    bus = EventBus()
    projector = BalanceProjector(tx)

    cash = CashSessionService(tx, policies, audit, outbox, projector)
    inventory = InventoryService(tx, audit, outbox, projector)
    dispatcher = OutboxDispatcher(
        tx,
        bus,
        batch_size=int(config.get("OUTBOX_BATCH_SIZE", 100)),
        poll_interval=float(config.get("OUTBOX_POLL_INTERVAL_SECONDS", 1.0)),
    )

    register_subscribers(
        bus,
        InventorySaleSubscriber(tx, inventory, policies),
        CashSaleSubscriber(cash),
    )

    return Services(
        tx=tx,
        policies=policies,
        audit=audit,
        outbox=outbox,
        bus=bus,
        projector=projector,
        registers=RegisterService(tx),
        cash=cash,
        inventory=inventory,
        dispatcher=dispatcher,
    )
