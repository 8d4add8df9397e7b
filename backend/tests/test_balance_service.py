from decimal import Decimal

import pytest

from tillbook.errors import NotFoundError
from tillbook.services.cash_session_service import BranchScope


def test_on_hand_reflects_every_movement(services, tenant, branch, stock_item):
    services.inventory.receive_stock(tenant.id, branch.id, stock_item.id, "12.5")
    services.inventory.waste_stock(tenant.id, branch.id, stock_item.id, "0.5", "Spilled")

    assert services.projector.on_hand(tenant.id, branch.id, stock_item.id) == Decimal("12.000")


def test_low_stock_alerts_include_items_at_threshold(services, tenant, branch, stock_item):
    services.inventory.receive_stock(tenant.id, branch.id, stock_item.id, 5)
    assert services.projector.low_stock_alerts(tenant.id, branch.id) == []

    services.inventory.waste_stock(tenant.id, branch.id, stock_item.id, 3, "Expired batch")
    alerts = services.projector.low_stock_alerts(tenant.id, branch.id)

    assert alerts == [
        {"stock_item_id": stock_item.id, "on_hand": Decimal("2.000"), "min_threshold": Decimal("2.000")}
    ]


def test_low_stock_alerts_lowest_first_and_unassigned_at_zero(services, tenant, branch, stock_item):
    services.inventory.receive_stock(tenant.id, branch.id, stock_item.id, 1)
    basil = services.inventory.create_stock_item(tenant.id, "Thai basil")
    # Sale deductions do not require a branch assignment
    services.inventory.record_sale_deductions(tenant.id, branch.id, "S-100", [(basil.id, "1.5")])

    alerts = services.projector.low_stock_alerts(tenant.id, branch.id)

    assert [a["stock_item_id"] for a in alerts] == [basil.id, stock_item.id]
    assert alerts[0]["min_threshold"] == Decimal("0.000")
    assert alerts[0]["on_hand"] == Decimal("-1.500")


def test_inventory_exceptions_report_negative_stock(services, tenant, branch, stock_item):
    services.inventory.receive_stock(tenant.id, branch.id, stock_item.id, 1)
    services.inventory.record_sale_deductions(tenant.id, branch.id, "S-1", [(stock_item.id, 3)])

    exceptions = services.projector.inventory_exceptions(tenant.id, branch.id)

    assert exceptions == [
        {"type": "negative_stock", "stock_item_id": stock_item.id, "on_hand": Decimal("-2.000")}
    ]


def test_session_totals_ignore_pending_movements(services, tenant, branch):
    cash_session = services.cash.open_session(
        BranchScope(tenant.id, branch.id), opened_by=7, opening_float_usd="100.00", opening_float_khr=40000
    )
    services.cash.record_movement(tenant.id, cash_session.id, 7, "PAID_IN", "50.00", 0, "Change from bank")
    services.cash.record_movement(tenant.id, cash_session.id, 7, "PAID_OUT", "20.00", 10000, "Ice delivery")
    # Refunds wait for approval under the default policy
    services.cash.record_movement(tenant.id, cash_session.id, 7, "REFUND_CASH", "5.00", 0, "Cold soup")

    totals = services.projector.session_totals(tenant.id, cash_session.id)

    assert totals.usd.total_cash_in == Decimal("50.00")
    assert totals.usd.total_cash_out == Decimal("20.00")
    assert totals.usd.net_cash_flow == Decimal("30.00")
    assert totals.usd.expected_cash == Decimal("130.00")
    assert totals.khr.total_cash_out == Decimal("10000.00")
    assert totals.khr.expected_cash == Decimal("30000.00")
    assert totals.to_dict()["usd"]["expected_cash"] == "130.00"


def test_session_totals_unknown_session(services, tenant):
    with pytest.raises(NotFoundError):
        services.projector.session_totals(tenant.id, 424242)


def test_session_totals_are_tenant_scoped(services, tenant, branch, other_tenant):
    cash_session = services.cash.open_session(BranchScope(tenant.id, branch.id), opened_by=7)

    with pytest.raises(NotFoundError):
        services.projector.session_totals(other_tenant.id, cash_session.id)
