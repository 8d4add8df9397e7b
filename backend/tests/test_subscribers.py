"""
Sale subscribers driven through the outbox dispatcher.

The sales module is simulated by publishing its events into the outbox
in a transaction of our own.
"""

from decimal import Decimal

import pytest

from tillbook.events import SaleFinalizedV1, SaleLine, SaleReopenedV1, SaleVoidedV1, Tender
from tillbook.services.cash_session_service import BranchScope


def _publish(services, event):
    services.tx.with_transaction(lambda s: services.outbox.publish(event, s))


def _entries(fetch, services, tenant, sale_id, reasons):
    return fetch(lambda s: services.inventory.sale_entries(s, tenant.id, sale_id, reasons))


@pytest.fixture
def mapped_item(services, tenant, stock_item):
    """One bowl of M-PHO consumes 1 unit of the stock item."""
    services.inventory.set_menu_stock_mapping(tenant.id, "M-PHO", stock_item.id, 1)
    return stock_item


def _finalized(tenant, branch, sale_id="S-1", qty="3", tenders=(), actor_id=11):
    return SaleFinalizedV1(
        tenant_id=tenant.id,
        branch_id=branch.id,
        sale_id=sale_id,
        lines=(SaleLine(menu_item_id="M-PHO", qty=Decimal(qty)),),
        tenders=tuple(tenders),
        actor_id=actor_id,
    )


class TestInventoryRoundTrip:
    def test_finalize_void_reopen_walks_stock(self, services, tenant, branch, mapped_item):
        def on_hand():
            return services.projector.on_hand(tenant.id, branch.id, mapped_item.id)

        assert on_hand() == Decimal("0.000")
        services.inventory.receive_stock(tenant.id, branch.id, mapped_item.id, 10)
        assert on_hand() == Decimal("10.000")

        _publish(services, _finalized(tenant, branch))
        services.dispatcher.dispatch()
        assert on_hand() == Decimal("7.000")

        _publish(services, SaleVoidedV1(tenant_id=tenant.id, branch_id=branch.id, sale_id="S-1", actor_id=11))
        services.dispatcher.dispatch()
        assert on_hand() == Decimal("10.000")

        _publish(services, SaleReopenedV1(
            tenant_id=tenant.id, branch_id=branch.id,
            original_sale_id="S-1", new_sale_id="S-1-R", actor_id=11,
        ))
        services.dispatcher.dispatch()
        assert on_hand() == Decimal("7.000")

    def test_void_restores_recorded_quantities_after_mapping_change(
        self, services, tenant, branch, mapped_item, fetch
    ):
        _publish(services, _finalized(tenant, branch, qty="2"))
        services.dispatcher.dispatch()

        services.inventory.set_menu_stock_mapping(tenant.id, "M-PHO", mapped_item.id, 5)
        _publish(services, SaleVoidedV1(tenant_id=tenant.id, branch_id=branch.id, sale_id="S-1", actor_id=11))
        services.dispatcher.dispatch()

        restored = _entries(fetch, services, tenant, "S-1", ("void",))
        assert [e.delta for e in restored] == [Decimal("2.000")]

    def test_fractional_mapping_is_quantized(self, services, tenant, branch, stock_item, fetch):
        services.inventory.set_menu_stock_mapping(tenant.id, "M-PHO", stock_item.id, "0.333")
        _publish(services, _finalized(tenant, branch, qty="1.5"))
        services.dispatcher.dispatch()

        deducted = _entries(fetch, services, tenant, "S-1", ("sale",))
        assert [e.delta for e in deducted] == [Decimal("-0.500")]


class TestIdempotency:
    def test_redelivered_finalize_deducts_once(self, services, tenant, branch, mapped_item, fetch):
        event = _finalized(tenant, branch)

        services.bus.publish(event)
        services.bus.publish(event)

        assert len(_entries(fetch, services, tenant, "S-1", ("sale",))) == 1
        assert services.projector.on_hand(tenant.id, branch.id, mapped_item.id) == Decimal("-3.000")

    def test_redelivered_void_restores_once(self, services, tenant, branch, mapped_item, fetch):
        services.bus.publish(_finalized(tenant, branch))
        void = SaleVoidedV1(tenant_id=tenant.id, branch_id=branch.id, sale_id="S-1", actor_id=11)

        services.bus.publish(void)
        services.bus.publish(void)

        assert len(_entries(fetch, services, tenant, "S-1", ("void",))) == 1
        assert services.projector.on_hand(tenant.id, branch.id, mapped_item.id) == Decimal("0.000")

    def test_void_of_unknown_sale_is_noop(self, services, tenant, branch, fetch):
        services.bus.publish(SaleVoidedV1(tenant_id=tenant.id, branch_id=branch.id, sale_id="S-X", actor_id=11))

        assert _entries(fetch, services, tenant, "S-X", ("void",)) == []


class TestPolicies:
    def test_subtract_disabled_for_branch(self, services, tenant, branch, mapped_item, fetch):
        services.tx.with_transaction(
            lambda s: services.policies.set_inventory_policy(
                s, tenant.id, branch_overrides={branch.id: {"subtract_on_finalize": False}}
            )
        )

        services.bus.publish(_finalized(tenant, branch))

        assert _entries(fetch, services, tenant, "S-1", ("sale",)) == []

    def test_excluded_menu_item_not_deducted(self, services, tenant, branch, mapped_item, fetch):
        services.tx.with_transaction(
            lambda s: services.policies.set_inventory_policy(s, tenant.id, excluded_menu_item_ids=["M-PHO"])
        )

        services.bus.publish(_finalized(tenant, branch))

        assert _entries(fetch, services, tenant, "S-1", ("sale",)) == []

    def test_unmapped_menu_item_skipped(self, services, tenant, branch, stock_item, fetch):
        services.bus.publish(_finalized(tenant, branch))

        assert _entries(fetch, services, tenant, "S-1", ("sale",)) == []


class TestCashSubscriber:
    def test_cash_tender_recorded_and_refunded(self, services, tenant, branch):
        cash_session = services.cash.open_session(BranchScope(tenant.id, branch.id), opened_by=11)
        tenders = [
            Tender(method="CASH", amount_usd=Decimal("8.50")),
            Tender(method="QR", amount_usd=Decimal("3.00")),
        ]

        _publish(services, _finalized(tenant, branch, tenders=tenders))
        services.dispatcher.dispatch()
        totals = services.projector.session_totals(tenant.id, cash_session.id)
        assert totals.usd.expected_cash == Decimal("8.50")

        _publish(services, SaleVoidedV1(tenant_id=tenant.id, branch_id=branch.id, sale_id="S-1", actor_id=11))
        services.dispatcher.dispatch()
        totals = services.projector.session_totals(tenant.id, cash_session.id)
        assert totals.usd.expected_cash == Decimal("0.00")
        assert totals.usd.total_cash_out == Decimal("8.50")

    def test_cash_tender_redelivery_records_once(self, services, tenant, branch):
        cash_session = services.cash.open_session(BranchScope(tenant.id, branch.id), opened_by=11)
        event = _finalized(tenant, branch, tenders=[Tender(method="CASH", amount_usd=Decimal("4.00"))])

        services.bus.publish(event)
        services.bus.publish(event)

        assert len(services.cash.list_movements(tenant.id, cash_session.id)) == 1
