import pytest

from tillbook.errors import ConflictError, NotFoundError, ValidationError
from tillbook.services.cash_session_service import RegisterScope


def test_create_and_list_registers(services, tenant, branch):
    services.registers.create_register(tenant.id, branch.id, "Bar")
    services.registers.create_register(tenant.id, branch.id, "Counter")

    names = [r.name for r in services.registers.list_registers(tenant.id, branch.id)]
    assert names == ["Bar", "Counter"]


def test_duplicate_name_conflicts(services, tenant, branch):
    services.registers.create_register(tenant.id, branch.id, "Bar")

    with pytest.raises(ConflictError):
        services.registers.create_register(tenant.id, branch.id, "Bar")


def test_name_required(services, tenant, branch):
    with pytest.raises(ValidationError):
        services.registers.create_register(tenant.id, branch.id, "  ")


def test_branch_must_belong_to_tenant(services, other_tenant, branch):
    with pytest.raises(NotFoundError):
        services.registers.create_register(other_tenant.id, branch.id, "Bar")


def test_cannot_deactivate_with_open_session(services, tenant, branch):
    register = services.registers.create_register(tenant.id, branch.id, "Bar")
    cash_session = services.cash.open_session(RegisterScope(tenant.id, branch.id, register.id), opened_by=1)

    with pytest.raises(ConflictError):
        services.registers.deactivate_register(tenant.id, register.id)

    services.cash.close_session(tenant.id, cash_session.id, 1, 0, 0)
    deactivated = services.registers.deactivate_register(tenant.id, register.id)

    assert deactivated.status == "INACTIVE"
    assert services.registers.list_registers(tenant.id, branch.id) == []
    assert len(services.registers.list_registers(tenant.id, branch.id, active_only=False)) == 1
