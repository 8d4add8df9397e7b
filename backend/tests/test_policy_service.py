from decimal import Decimal

import pytest

from tillbook.errors import ValidationError
from tillbook.services.policy_service import CashSessionPolicies, PolicyService


def test_defaults_without_policy_row(services, tenant):
    policies = services.tx.with_transaction(lambda s: services.policies.get_cash_session_policies(s, tenant.id))

    assert policies == CashSessionPolicies()
    assert policies.paid_out_limit_usd == Decimal("500")


def test_null_columns_fall_back_to_defaults(services, tenant):
    def _op(s):
        services.policies.set_cash_session_policies(s, tenant.id, allow_paid_out=False)
        return services.policies.get_cash_session_policies(s, tenant.id)

    policies = services.tx.with_transaction(_op)

    assert policies.allow_paid_out is False
    assert policies.require_refund_approval is True
    assert policies.variance_review_threshold_usd == Decimal("5.00")


def test_configured_threshold_default():
    service = PolicyService(default_variance_threshold_usd=Decimal("2.50"))
    assert service.cash_defaults.variance_review_threshold_usd == Decimal("2.50")


def test_unknown_field_rejected(services, tenant):
    with pytest.raises(ValidationError):
        services.tx.with_transaction(
            lambda s: services.policies.set_cash_session_policies(s, tenant.id, allow_tips=True)
        )


def test_negative_limit_rejected(services, tenant):
    with pytest.raises(ValidationError):
        services.tx.with_transaction(
            lambda s: services.policies.set_cash_session_policies(s, tenant.id, paid_out_limit_usd=Decimal("-1"))
        )


def test_branch_override_wins_over_tenant_flag(services, tenant, branch):
    def _op(s):
        services.policies.set_inventory_policy(
            s, tenant.id,
            subtract_on_finalize=False,
            branch_overrides={str(branch.id): {"subtract_on_finalize": True}},
        )
        return (
            services.policies.should_subtract_on_sale(s, tenant.id, branch.id),
            services.policies.should_subtract_on_sale(s, tenant.id, branch.id + 1),
        )

    assert services.tx.with_transaction(_op) == (True, False)


def test_subtract_defaults_to_config(services, tenant, branch):
    assert services.tx.with_transaction(
        lambda s: services.policies.should_subtract_on_sale(s, tenant.id, branch.id)
    ) is True


def test_inventory_policy_update_needs_a_field(services, tenant):
    with pytest.raises(ValidationError):
        services.tx.with_transaction(lambda s: services.policies.set_inventory_policy(s, tenant.id))


def test_excluded_menu_items(services, tenant):
    def _op(s):
        services.policies.set_inventory_policy(s, tenant.id, excluded_menu_item_ids=["M-WATER", 42])
        return (
            services.policies.is_menu_item_excluded(s, tenant.id, "M-WATER"),
            services.policies.is_menu_item_excluded(s, tenant.id, "42"),
            services.policies.is_menu_item_excluded(s, tenant.id, "M-PHO"),
        )

    assert services.tx.with_transaction(_op) == (True, True, False)
