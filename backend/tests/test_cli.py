import json
from decimal import Decimal

import pytest

from tillbook.services.cash_session_service import RegisterScope


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def test_outbox_pending_and_dispatch(runner, services, tenant, branch, stock_item):
    services.inventory.receive_stock(tenant.id, branch.id, stock_item.id, "5")

    pending = runner.invoke(args=["outbox", "pending", "--tenant-id", str(tenant.id), "--list"])
    assert pending.exit_code == 0
    assert "Pending: 1" in pending.output
    assert "inventory.stock_received" in pending.output

    dispatched = runner.invoke(args=["outbox", "dispatch"])
    assert dispatched.exit_code == 0
    assert "PASS Claimed 1, delivered 1, failed 0" in dispatched.output
    assert services.dispatcher.pending()["pending"] == 0


def test_inventory_commands(runner, services, tenant, branch, stock_item):
    services.inventory.receive_stock(tenant.id, branch.id, stock_item.id, "1.5")
    common = ["--tenant-id", str(tenant.id), "--branch-id", str(branch.id)]

    on_hand = runner.invoke(args=["inventory", "on-hand", *common, "--stock-item-id", str(stock_item.id)])
    assert f"Stock item {stock_item.id} on hand: 1.500" in on_hand.output

    low_stock = runner.invoke(args=["inventory", "low-stock", *common])
    assert "1.500" in low_stock.output

    exceptions = runner.invoke(args=["inventory", "exceptions", *common])
    assert "No inventory exceptions." in exceptions.output

    journal = runner.invoke(args=["inventory", "journal", *common])
    entry = json.loads(journal.output.splitlines()[0])
    assert entry["reason"] == "receive"
    assert Decimal(entry["delta"]) == Decimal("1.5")


def test_journal_reports_validation_errors(runner, tenant, branch, db_session):
    result = runner.invoke(args=["inventory", "journal", "--tenant-id", str(tenant.id),
                                 "--branch-id", str(branch.id), "--reason", "theft"])
    assert result.output.startswith("FAIL Error:")


def test_cash_commands(runner, services, tenant, branch, register):
    cash_session = services.cash.open_session(RegisterScope(tenant.id, branch.id, register.id), 11, "100.00")

    sessions = runner.invoke(args=["cash", "sessions", "--tenant-id", str(tenant.id), "--status", "OPEN"])
    assert "OPEN" in sessions.output
    assert str(register.id) in sessions.output

    totals = runner.invoke(args=["cash", "totals", "--tenant-id", str(tenant.id),
                                 "--session-id", str(cash_session.id)])
    assert json.loads(totals.output)["usd"]["expected_cash"] == "100.00"

    missing = runner.invoke(args=["cash", "report", "--tenant-id", str(tenant.id), "--session-id", "999"])
    assert missing.output.startswith("FAIL Error:")


def test_dispatch_rejects_zero_batch_size(runner, db_session):
    result = runner.invoke(args=["outbox", "dispatch", "--batch-size", "0"])

    assert result.exit_code == 0
    assert result.output.startswith("FAIL Error: batch_size must be positive")
