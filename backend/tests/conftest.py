"""
Pytest fixtures for tillbook backend tests.

Provides the in-memory database, a clean schema per test, tenancy and
inventory reference data, and the wired service container.
"""

import pytest
from sqlalchemy import select

from tillbook import create_app
from tillbook.config import TestConfig
from tillbook.extensions import db
from tillbook.models import Branch, CashRegister, OutboxRecord, Tenant
from tillbook.services import build_services


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def services(app, db_session):
    """Service container bound to the test app."""
    return app.extensions["tillbook"]


@pytest.fixture(scope='function')
def build(app, db_session):
    """Build a separate container, e.g. with a substituted outbox publisher."""
    def _build(**kwargs):
        return build_services(app.config, **kwargs)
    return _build


@pytest.fixture(scope='function')
def tenant(db_session):
    """Create Tenant A."""
    tenant = Tenant(name="Tenant A - Noodle House", code="NOODLE", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def other_tenant(db_session):
    """Create Tenant B (isolation checks)."""
    tenant = Tenant(name="Tenant B - Coffee Bar", code="COFFEE", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def branch(db_session, tenant):
    """Create Branch 1 in Tenant A."""
    branch = Branch(tenant_id=tenant.id, name="Riverside", code="RS")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def other_branch(db_session, other_tenant):
    branch = Branch(tenant_id=other_tenant.id, name="Downtown", code="DT")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def register(db_session, tenant, branch):
    """Create an ACTIVE register in Branch 1."""
    register = CashRegister(tenant_id=tenant.id, branch_id=branch.id, name="Front Till", status="ACTIVE")
    db_session.add(register)
    db_session.commit()
    return register


@pytest.fixture(scope='function')
def stock_item(services, tenant, branch):
    """Stock item assigned to Branch 1 with threshold 2."""
    item = services.inventory.create_stock_item(tenant.id, "Rice noodles", unit_text="kg")
    services.inventory.assign_stock_item_to_branch(tenant.id, branch.id, item.id, min_threshold=2)
    return item


@pytest.fixture(scope='function')
def fetch(services):
    """Run a read in a fresh transaction (avoids the scoped session's identity map)."""
    def _fetch(fn):
        return services.tx.with_transaction(fn)
    return _fetch


@pytest.fixture(scope='function')
def outbox_rows(fetch):
    """All outbox rows, oldest first."""
    def _rows(event_type=None):
        def _op(s):
            stmt = select(OutboxRecord).order_by(OutboxRecord.id.asc())
            if event_type is not None:
                stmt = stmt.where(OutboxRecord.type == event_type)
            return list(s.scalars(stmt))
        return fetch(_op)
    return _rows

