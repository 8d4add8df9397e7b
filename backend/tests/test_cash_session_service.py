"""
Cash session lifecycle tests.

Covers: single open session per scope, the drawer scenario (float + sales -
paid-outs, counted with a small shortage), review thresholds, approvals,
take-over, force close, tenant policy enforcement and atomicity of the
close with its outbox event.
"""

from decimal import Decimal

import pytest

from tillbook.errors import ConflictError, NotFoundError, ValidationError
from tillbook.events import CashSessionClosedV1
from tillbook.models import CashRegister
from tillbook.services import cash_session_service
from tillbook.services.cash_session_service import BranchScope, RegisterScope
from tillbook.services.outbox_service import OutboxPublisher


class ClosedEventFailure(OutboxPublisher):
    """Outbox whose write fails for session-closed events only."""

    def publish(self, event, session):
        if isinstance(event, CashSessionClosedV1):
            raise RuntimeError("outbox unavailable")
        return super().publish(event, session)


def _set_policy(services, tenant, **values):
    return services.tx.with_transaction(
        lambda s: services.policies.set_cash_session_policies(s, tenant.id, **values)
    )


def _record_locks(monkeypatch):
    """Capture the lock options each session lookup asks for."""
    calls = []
    real_lock = cash_session_service.lock_for_update

    def _lock(stmt, **kwargs):
        calls.append(kwargs)
        return real_lock(stmt, **kwargs)

    monkeypatch.setattr(cash_session_service, "lock_for_update", _lock)
    return calls


@pytest.fixture
def scope(tenant, branch, register):
    return RegisterScope(tenant.id, branch.id, register.id)


@pytest.fixture
def open_session(services, scope):
    return services.cash.open_session(scope, opened_by=11, opening_float_usd="100.00")


# =============================================================================
# OPEN
# =============================================================================

class TestOpenSession:
    def test_open_publishes_event(self, services, open_session, outbox_rows):
        assert open_session.status == "OPEN"
        assert open_session.responsible_actor_id == 11

        rows = outbox_rows("cash.session_opened")
        assert len(rows) == 1
        assert rows[0].payload["sessionId"] == open_session.id
        assert rows[0].payload["openingFloatUsd"] == "100.00"
        assert rows[0].sent_at is None

    def test_second_open_on_same_register_conflicts(self, services, scope, open_session):
        with pytest.raises(ConflictError) as exc_info:
            services.cash.open_session(scope, opened_by=12)
        assert exc_info.value.details["session_id"] == open_session.id

    def test_branch_scope_is_independent_of_register_scope(self, services, tenant, branch, open_session):
        branch_session = services.cash.open_session(BranchScope(tenant.id, branch.id), opened_by=12)

        assert branch_session.register_id is None
        assert services.cash.get_active_session(BranchScope(tenant.id, branch.id)).id == branch_session.id

    def test_reopen_after_close(self, services, tenant, scope, open_session):
        services.cash.close_session(tenant.id, open_session.id, 11, "100.00", 0)

        second = services.cash.open_session(scope, opened_by=11)
        assert second.id != open_session.id

    def test_negative_float_rejected(self, services, scope):
        with pytest.raises(ValidationError):
            services.cash.open_session(scope, opened_by=11, opening_float_usd="-1.00")

    def test_unknown_register(self, services, tenant, branch):
        with pytest.raises(NotFoundError):
            services.cash.open_session(RegisterScope(tenant.id, branch.id, 9999), opened_by=11)

    def test_inactive_register(self, services, db_session, tenant, branch):
        register = CashRegister(tenant_id=tenant.id, branch_id=branch.id, name="Old Till", status="INACTIVE")
        db_session.add(register)
        db_session.commit()

        with pytest.raises(ValidationError):
            services.cash.open_session(RegisterScope(tenant.id, branch.id, register.id), opened_by=11)


# =============================================================================
# MOVEMENTS
# =============================================================================

class TestMovements:
    def test_paid_out_is_signed_negative(self, services, tenant, open_session):
        movement = services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_OUT", "20.00", 0, "Ice")

        assert movement.amount_usd == Decimal("-20.00")
        assert movement.status == "APPROVED"

    def test_reason_length_enforced(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_IN", "5.00", 0, "ok")

    def test_zero_amount_rejected(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_IN", 0, 0, "Nothing at all")

    def test_unknown_session(self, services, tenant):
        with pytest.raises(NotFoundError):
            services.cash.record_movement(tenant.id, 5555, 11, "PAID_IN", "5.00", 0, "Top-up")

    def test_closed_session_rejects_movements(self, services, tenant, open_session):
        services.cash.close_session(tenant.id, open_session.id, 11, "100.00", 0)

        with pytest.raises(ValidationError):
            services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_IN", "5.00", 0, "Late top-up")

    def test_paid_out_over_limit_requires_approval(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_OUT", "600.00", 0, "Supplier")

        movement = services.cash.record_movement(
            tenant.id, open_session.id, 11, "PAID_OUT", "600.00", 0, "Supplier", requires_approval=True
        )
        assert movement.status == "PENDING"

    def test_paid_out_disallowed_by_policy(self, services, tenant, open_session):
        _set_policy(services, tenant, allow_paid_out=False)

        with pytest.raises(ValidationError):
            services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_OUT", "1.00", 0, "Stamps")

    def test_adjustment_requires_policy(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.record_movement(tenant.id, open_session.id, 11, "ADJUSTMENT", "-3.00", 0, "Miscount")

        _set_policy(services, tenant, allow_manual_adjustment=True)
        movement = services.cash.record_movement(
            tenant.id, open_session.id, 11, "ADJUSTMENT", "-3.00", 0, "Miscount"
        )
        assert movement.amount_usd == Decimal("-3.00")

    def test_refund_pending_until_reviewed(self, services, tenant, open_session):
        refund = services.cash.record_movement(tenant.id, open_session.id, 11, "REFUND_CASH", "8.00", 0, "Wrong order")
        assert refund.status == "PENDING"
        assert services.projector.session_totals(tenant.id, open_session.id).usd.expected_cash == Decimal("100.00")

        services.cash.review_movement(tenant.id, refund.id, reviewer_id=99, approve=True)
        assert services.projector.session_totals(tenant.id, open_session.id).usd.expected_cash == Decimal("92.00")

    def test_rejected_movement_never_counts(self, services, tenant, open_session):
        refund = services.cash.record_movement(tenant.id, open_session.id, 11, "REFUND_CASH", "8.00", 0, "Wrong order")
        services.cash.review_movement(tenant.id, refund.id, reviewer_id=99, approve=False)

        assert services.projector.session_totals(tenant.id, open_session.id).usd.expected_cash == Decimal("100.00")
        with pytest.raises(ValidationError):
            services.cash.review_movement(tenant.id, refund.id, reviewer_id=99, approve=True)

    def test_refund_approved_immediately_when_policy_allows(self, services, tenant, open_session):
        _set_policy(services, tenant, require_refund_approval=False)

        refund = services.cash.record_movement(tenant.id, open_session.id, 11, "REFUND_CASH", "8.00", 0, "Wrong order")
        assert refund.status == "APPROVED"


# =============================================================================
# CLOSE / APPROVE
# =============================================================================

class TestClose:
    def test_drawer_scenario_small_shortage_closes(self, services, tenant, open_session, outbox_rows):
        services.cash.record_movement(tenant.id, open_session.id, 11, "SALE_CASH", "50.00", 0, "Lunch rush")
        services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_OUT", "20.00", 0, "Ice delivery")

        closed = services.cash.close_session(tenant.id, open_session.id, 11, "128.00", 0)

        assert closed.expected_cash_usd == Decimal("130.00")
        assert closed.counted_cash_usd == Decimal("128.00")
        assert closed.variance_usd == Decimal("-2.00")
        assert closed.status == "CLOSED"

        event = outbox_rows("cash.session_closed")[0].payload
        assert event["varianceUsd"] == "-2.00"
        assert event["forced"] is False

    def test_large_variance_needs_review(self, services, tenant, open_session):
        closed = services.cash.close_session(tenant.id, open_session.id, 11, "90.00", 0)
        assert closed.status == "PENDING_REVIEW"

        approved = services.cash.approve_session(tenant.id, open_session.id, approved_by=99, note="Counted twice")
        assert approved.status == "APPROVED"
        assert approved.approved_by == 99

    def test_threshold_comes_from_policy(self, services, tenant, open_session):
        _set_policy(services, tenant, variance_review_threshold_usd=Decimal("1.00"))

        closed = services.cash.close_session(tenant.id, open_session.id, 11, "98.00", 0)
        assert closed.status == "PENDING_REVIEW"

    def test_approve_only_from_pending_review(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.approve_session(tenant.id, open_session.id, approved_by=99)

        services.cash.close_session(tenant.id, open_session.id, 11, "100.00", 0)
        with pytest.raises(ValidationError):
            services.cash.approve_session(tenant.id, open_session.id, approved_by=99)

    def test_close_twice_fails(self, services, tenant, open_session):
        services.cash.close_session(tenant.id, open_session.id, 11, "100.00", 0)

        with pytest.raises(ValidationError):
            services.cash.close_session(tenant.id, open_session.id, 11, "100.00", 0)

    def test_negative_count_rejected(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.close_session(tenant.id, open_session.id, 11, "-1.00", 0)

    def test_close_rolls_back_when_outbox_write_fails(self, services, build, tenant, open_session, outbox_rows):
        failing = build(outbox=ClosedEventFailure())

        with pytest.raises(RuntimeError):
            failing.cash.close_session(tenant.id, open_session.id, 11, "128.00", 0)

        reloaded = services.cash.get_session(tenant.id, open_session.id)
        assert reloaded.status == "OPEN"
        assert reloaded.expected_cash_usd is None
        assert outbox_rows("cash.session_closed") == []

    def test_force_close_defaults_counts_to_expected(self, services, tenant, open_session, outbox_rows, fetch):
        services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_IN", "10.00", 0, "Coins")

        closed = services.cash.force_close(tenant.id, open_session.id, closed_by=99, reason="Cashier left early")

        assert closed.status == "CLOSED"
        assert closed.counted_cash_usd == Decimal("110.00")
        assert closed.variance_usd == Decimal("0.00")
        assert outbox_rows("cash.session_closed")[0].payload["forced"] is True

        audit = fetch(lambda s: services.audit.list_for_resource(s, tenant.id, "cash_session", open_session.id))
        assert [a.action_type for a in audit] == ["CASH_SESSION_FORCE_CLOSED"]

    def test_force_close_requires_reason(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.force_close(tenant.id, open_session.id, closed_by=99, reason="")


# =============================================================================
# TAKE OVER
# =============================================================================

class TestTakeOver:
    def test_take_over_reassigns_without_closing(self, services, tenant, open_session, outbox_rows, fetch):
        taken = services.cash.take_over(tenant.id, open_session.id, new_actor_id=12, reason="Shift change")

        assert taken.status == "OPEN"
        assert taken.responsible_actor_id == 12
        assert taken.opened_by == 11

        payload = outbox_rows("cash.session_taken_over")[0].payload
        assert payload["previousActorId"] == 11
        assert payload["newActorId"] == 12

        audit = fetch(lambda s: services.audit.list_for_resource(s, tenant.id, "cash_session", open_session.id))
        assert audit[0].action_type == "CASH_SESSION_TAKEN_OVER"

    def test_take_over_by_same_actor_rejected(self, services, tenant, open_session):
        with pytest.raises(ValidationError):
            services.cash.take_over(tenant.id, open_session.id, new_actor_id=11, reason="Shift change")

    def test_take_over_closed_session_rejected(self, services, tenant, open_session):
        services.cash.close_session(tenant.id, open_session.id, 11, "100.00", 0)

        with pytest.raises(ValidationError):
            services.cash.take_over(tenant.id, open_session.id, new_actor_id=12, reason="Shift change")


# =============================================================================
# SALES GATE / SALE CASH / REPORT
# =============================================================================

class TestSalesIntegration:
    def test_check_sale_allowed_requires_open_session(self, services, tenant, branch):
        scope = BranchScope(tenant.id, branch.id)
        with pytest.raises(ValidationError):
            services.cash.check_sale_allowed(scope)

        _set_policy(services, tenant, require_session_for_sales=False)
        assert services.cash.check_sale_allowed(scope) is None

        opened = services.cash.open_session(scope, opened_by=11)
        assert services.cash.check_sale_allowed(scope).id == opened.id

    def test_sale_cash_recorded_once_on_actor_session(self, services, tenant, branch, open_session):
        first = services.cash.record_sale_cash(tenant.id, branch.id, 11, "S-1", Decimal("12.50"), Decimal("0"))
        again = services.cash.record_sale_cash(tenant.id, branch.id, 11, "S-1", Decimal("12.50"), Decimal("0"))

        assert first.session_id == open_session.id
        assert first.amount_usd == Decimal("12.50")
        assert again is None

    def test_sale_cash_without_open_session_is_skipped(self, services, tenant, branch, open_session):
        assert services.cash.record_sale_cash(tenant.id, branch.id, 404, "S-2", Decimal("5"), Decimal("0")) is None

    def test_sale_refund_reverses_sale_cash(self, services, tenant, branch, open_session):
        services.cash.record_sale_cash(tenant.id, branch.id, 11, "S-3", Decimal("7.00"), Decimal("4000"))

        refund = services.cash.record_sale_refund(tenant.id, 11, "S-3", "Customer changed mind")

        assert refund.type == "REFUND_CASH"
        assert refund.amount_usd == Decimal("-7.00")
        assert refund.amount_khr == Decimal("-4000.00")
        assert services.cash.record_sale_refund(tenant.id, 11, "S-3") is None

    def test_session_report(self, services, tenant, open_session):
        services.cash.record_movement(tenant.id, open_session.id, 11, "SALE_CASH", "50.00", 0, "Lunch rush")
        services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_OUT", "20.00", 0, "Ice delivery")
        services.cash.record_movement(tenant.id, open_session.id, 11, "REFUND_CASH", "3.00", 0, "Cold soup")

        report = services.cash.session_report(tenant.id, open_session.id)
        summary = report["summary"]

        assert summary["total_sales_cash_usd"] == "50.00"
        assert summary["total_paid_out_usd"] == "20.00"
        assert summary["total_refunds_usd"] == "0.00"
        assert summary["expected_cash_usd"] == "130.00"
        assert summary["counted_cash_usd"] is None
        assert summary["pending_movements"] == 1
        assert len(report["movements"]) == 3

        services.cash.close_session(tenant.id, open_session.id, 11, "128.00", 0)
        closed = services.cash.session_report(tenant.id, open_session.id)["summary"]
        assert closed["variance_usd"] == "-2.00"

    def test_refund_after_close_moves_to_actors_new_session(self, services, tenant, branch, scope, open_session):
        services.cash.record_sale_cash(tenant.id, branch.id, 11, "S-5", Decimal("7.00"), Decimal("0"))
        services.cash.close_session(tenant.id, open_session.id, 11, "107.00", 0)
        next_shift = services.cash.open_session(scope, opened_by=11)

        refund = services.cash.record_sale_refund(tenant.id, 11, "S-5", "Wrong order")

        assert refund.session_id == next_shift.id
        assert refund.amount_usd == Decimal("-7.00")
        assert services.cash.get_session(tenant.id, open_session.id).expected_cash_usd == Decimal("107.00")

    def test_refund_without_open_session_is_flagged(self, services, tenant, branch, open_session, outbox_rows, fetch):
        services.cash.record_sale_cash(tenant.id, branch.id, 11, "S-4", Decimal("7.00"), Decimal("0"))
        services.cash.close_session(tenant.id, open_session.id, 11, "107.00", 0)

        assert services.cash.record_sale_refund(tenant.id, 11, "S-4", "Wrong order") is None
        assert services.cash.record_sale_refund(tenant.id, 11, "S-4", "Wrong order") is None

        rows = outbox_rows("cash.refund_unrecorded")
        assert len(rows) == 1
        assert rows[0].payload["saleId"] == "S-4"
        assert rows[0].payload["sessionStatus"] == "CLOSED"
        assert rows[0].payload["amountUsd"] == "-7.00"

        actions = fetch(lambda s: [
            row.action_type for row in services.audit.list_for_resource(s, tenant.id, "sale", "S-4")
        ])
        assert actions == ["CASH_TENDER_ATTACHED_TO_SALE", "CASH_REFUND_UNRECORDED"]
        assert [m.type for m in services.cash.list_movements(tenant.id, open_session.id)] == ["SALE_CASH"]


# =============================================================================
# MOVEMENTS RACING A CLOSE
# =============================================================================

class TestMovementsAgainstClose:
    def test_movement_paths_take_a_shared_session_lock(self, services, tenant, branch, open_session, monkeypatch):
        calls = _record_locks(monkeypatch)

        services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_IN", "50.00", 0, "Change float")
        assert calls == [{"read": True}]

        calls.clear()
        services.cash.record_sale_cash(tenant.id, branch.id, 11, "S-6", Decimal("3.00"), Decimal("0"))
        assert calls == [{"read": True}]

        calls.clear()
        services.cash.record_sale_refund(tenant.id, 11, "S-6")
        assert calls == [{"read": True}]

    def test_close_blocks_movement_lock_until_it_commits(self, services, tenant, open_session, monkeypatch):
        real_load = services.cash._load_session
        closed = []

        def _load_after_close(s, tenant_id, session_id, **kwargs):
            # A shared lock waits for the in-flight close and then reads the committed row
            if kwargs.get("shared") and not closed:
                closed.append(services.cash.close_session(tenant.id, open_session.id, 11, "100.00", 0))
            return real_load(s, tenant_id, session_id, **kwargs)

        monkeypatch.setattr(services.cash, "_load_session", _load_after_close)

        with pytest.raises(ValidationError):
            services.cash.record_movement(tenant.id, open_session.id, 11, "PAID_IN", "50.00", 0, "Change float")

        monkeypatch.undo()
        session = services.cash.get_session(tenant.id, open_session.id)
        totals = services.projector.session_totals(tenant.id, open_session.id)
        assert session.status == "CLOSED"
        assert services.cash.list_movements(tenant.id, open_session.id) == []
        assert totals.usd.expected_cash == session.expected_cash_usd == Decimal("100.00")
