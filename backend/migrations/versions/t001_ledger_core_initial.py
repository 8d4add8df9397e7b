"""ledger core initial schema

Revision ID: t001_ledger_core
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates the cash-session and inventory ledger core:
- tenants / branches: tenancy reference data
- stock_items, branch_stock, menu_stock_map: inventory catalog
- inventory_journal: append-only signed stock deltas
- cash_registers, cash_sessions, cash_movements: till sessions and the cash ledger
- cash_session_policies, inventory_policies: per-tenant policy rows
- platform_outbox: transactional outbox
- audit_logs: compliance records
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 't001_ledger_core'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # tenancy
    # ============================================================================
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_tenants_code', 'tenants', ['code'], unique=True)
    op.create_index('ix_tenants_is_active', 'tenants', ['is_active'])

    op.create_table(
        'branches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_branches_tenant_name'),
        sa.UniqueConstraint('tenant_id', 'code', name='uq_branches_tenant_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_branches_tenant_id', 'branches', ['tenant_id'])
    op.create_index('ix_branches_code', 'branches', ['code'])

    # ============================================================================
    # inventory catalog
    # ============================================================================
    op.create_table(
        'stock_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('unit_text', sa.String(length=16), nullable=False, server_default='pcs'),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_stock_items_tenant_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_items_tenant_id', 'stock_items', ['tenant_id'])

    op.create_table(
        'branch_stock',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('stock_item_id', sa.Integer(), nullable=False),
        sa.Column('min_threshold', sa.Numeric(14, 3), nullable=False, server_default='0'),
        _timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.ForeignKeyConstraint(['stock_item_id'], ['stock_items.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'branch_id', 'stock_item_id', name='uq_branch_stock_item'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_branch_stock_tenant_id', 'branch_stock', ['tenant_id'])
    op.create_index('ix_branch_stock_branch_id', 'branch_stock', ['branch_id'])
    op.create_index('ix_branch_stock_stock_item_id', 'branch_stock', ['stock_item_id'])

    op.create_table(
        'menu_stock_map',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('menu_item_id', sa.String(length=64), nullable=False),
        sa.Column('stock_item_id', sa.Integer(), nullable=False),
        sa.Column('qty_per_sale', sa.Numeric(14, 3), nullable=False),
        _timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['stock_item_id'], ['stock_items.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'menu_item_id', 'stock_item_id', name='uq_menu_stock_map'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_menu_stock_map_tenant_id', 'menu_stock_map', ['tenant_id'])
    op.create_index('ix_menu_stock_map_menu_item_id', 'menu_stock_map', ['menu_item_id'])

    # ============================================================================
    # inventory_journal: append-only signed deltas (never UPDATE/DELETE)
    # ============================================================================
    op.create_table(
        'inventory_journal',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('stock_item_id', sa.Integer(), nullable=False),
        sa.Column('delta', sa.Numeric(14, 3), nullable=False),
        sa.Column('reason', sa.String(length=16), nullable=False),
        sa.Column('ref_sale_id', sa.String(length=64), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        _timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.ForeignKeyConstraint(['stock_item_id'], ['stock_items.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_journal_tenant_id', 'inventory_journal', ['tenant_id'])
    op.create_index('ix_inventory_journal_branch_id', 'inventory_journal', ['branch_id'])
    op.create_index('ix_inventory_journal_stock_item_id', 'inventory_journal', ['stock_item_id'])
    op.create_index('ix_inventory_journal_reason', 'inventory_journal', ['reason'])
    op.create_index('ix_inventory_journal_occurred_at', 'inventory_journal', ['occurred_at'])
    op.create_index('ix_invjournal_scope_occurred', 'inventory_journal',
                    ['tenant_id', 'branch_id', 'stock_item_id', 'occurred_at'])
    op.create_index('ix_invjournal_ref_sale', 'inventory_journal', ['tenant_id', 'ref_sale_id', 'reason'])

    # ============================================================================
    # cash registers and sessions
    # ============================================================================
    op.create_table(
        'cash_registers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        _timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'branch_id', 'name', name='uq_cash_registers_branch_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cash_registers_tenant_id', 'cash_registers', ['tenant_id'])
    op.create_index('ix_cash_registers_branch_id', 'cash_registers', ['branch_id'])

    op.create_table(
        'cash_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('register_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='OPEN'),
        sa.Column('opened_by', sa.Integer(), nullable=False),
        sa.Column('responsible_actor_id', sa.Integer(), nullable=False),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('opening_float_usd', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('opening_float_khr', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('closed_by', sa.Integer(), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expected_cash_usd', sa.Numeric(14, 2), nullable=True),
        sa.Column('expected_cash_khr', sa.Numeric(14, 2), nullable=True),
        sa.Column('counted_cash_usd', sa.Numeric(14, 2), nullable=True),
        sa.Column('counted_cash_khr', sa.Numeric(14, 2), nullable=True),
        sa.Column('variance_usd', sa.Numeric(14, 2), nullable=True),
        sa.Column('variance_khr', sa.Numeric(14, 2), nullable=True),
        sa.Column('approved_by', sa.Integer(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.ForeignKeyConstraint(['register_id'], ['cash_registers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cash_sessions_tenant_id', 'cash_sessions', ['tenant_id'])
    op.create_index('ix_cash_sessions_branch_id', 'cash_sessions', ['branch_id'])
    op.create_index('ix_cash_sessions_register_id', 'cash_sessions', ['register_id'])
    op.create_index('ix_cash_sessions_status', 'cash_sessions', ['status'])

    # One OPEN session per register, or per branch for branch-scoped sessions
    op.create_index(
        'uq_cash_sessions_open_register', 'cash_sessions', ['tenant_id', 'register_id'],
        unique=True,
        sqlite_where=sa.text("status = 'OPEN' AND register_id IS NOT NULL"),
        postgresql_where=sa.text("status = 'OPEN' AND register_id IS NOT NULL"),
    )
    op.create_index(
        'uq_cash_sessions_open_branch', 'cash_sessions', ['tenant_id', 'branch_id'],
        unique=True,
        sqlite_where=sa.text("status = 'OPEN' AND register_id IS NULL"),
        postgresql_where=sa.text("status = 'OPEN' AND register_id IS NULL"),
    )

    # ============================================================================
    # cash_movements: the cash ledger (signed, immutable except review fields)
    # ============================================================================
    op.create_table(
        'cash_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('register_id', sa.Integer(), nullable=True),
        sa.Column('session_id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='APPROVED'),
        sa.Column('amount_usd', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('amount_khr', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('ref_sale_id', sa.String(length=64), nullable=True),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('reviewed_by', sa.Integer(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        _timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.ForeignKeyConstraint(['register_id'], ['cash_registers.id'], ),
        sa.ForeignKeyConstraint(['session_id'], ['cash_sessions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cash_movements_tenant_id', 'cash_movements', ['tenant_id'])
    op.create_index('ix_cash_movements_branch_id', 'cash_movements', ['branch_id'])
    op.create_index('ix_cash_movements_session_id', 'cash_movements', ['session_id'])
    op.create_index('ix_cash_movements_type', 'cash_movements', ['type'])
    op.create_index('ix_cash_movements_occurred_at', 'cash_movements', ['occurred_at'])
    op.create_index('ix_cash_movements_scope_occurred', 'cash_movements',
                    ['tenant_id', 'branch_id', 'session_id', 'occurred_at'])
    op.create_index('ix_cash_movements_ref_sale', 'cash_movements', ['tenant_id', 'ref_sale_id', 'type'])

    # ============================================================================
    # policies
    # ============================================================================
    op.create_table(
        'cash_session_policies',
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('require_session_for_sales', sa.Boolean(), nullable=True),
        sa.Column('allow_paid_out', sa.Boolean(), nullable=True),
        sa.Column('require_refund_approval', sa.Boolean(), nullable=True),
        sa.Column('allow_manual_adjustment', sa.Boolean(), nullable=True),
        sa.Column('paid_out_limit_usd', sa.Numeric(14, 2), nullable=True),
        sa.Column('paid_out_limit_khr', sa.Numeric(14, 2), nullable=True),
        sa.Column('variance_review_threshold_usd', sa.Numeric(14, 2), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('tenant_id')
    )

    op.create_table(
        'inventory_policies',
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('subtract_on_finalize', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('branch_overrides', sa.JSON(), nullable=False),
        sa.Column('excluded_menu_item_ids', sa.JSON(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('tenant_id')
    )

    # ============================================================================
    # platform_outbox / audit_logs
    # ============================================================================
    op.create_table(
        'platform_outbox',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('payload', sa.JSON(), nullable=False),
        _timestamps(),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_platform_outbox_tenant_id', 'platform_outbox', ['tenant_id'])
    op.create_index('ix_platform_outbox_type', 'platform_outbox', ['type'])
    op.create_index('ix_platform_outbox_unsent', 'platform_outbox', ['sent_at', 'created_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=True),
        sa.Column('employee_id', sa.Integer(), nullable=True),
        sa.Column('actor_type', sa.String(length=16), nullable=False, server_default='EMPLOYEE'),
        sa.Column('action_type', sa.String(length=64), nullable=False),
        sa.Column('resource_type', sa.String(length=64), nullable=True),
        sa.Column('resource_id', sa.String(length=64), nullable=True),
        sa.Column('outcome', sa.String(length=16), nullable=False, server_default='SUCCESS'),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        _timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_action_type', 'audit_logs', ['action_type'])
    op.create_index('ix_audit_logs_tenant_occurred', 'audit_logs', ['tenant_id', 'occurred_at'])


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('platform_outbox')
    op.drop_table('inventory_policies')
    op.drop_table('cash_session_policies')
    op.drop_table('cash_movements')
    op.drop_index('uq_cash_sessions_open_branch', table_name='cash_sessions')
    op.drop_index('uq_cash_sessions_open_register', table_name='cash_sessions')
    op.drop_table('cash_sessions')
    op.drop_table('cash_registers')
    op.drop_table('inventory_journal')
    op.drop_table('menu_stock_map')
    op.drop_table('branch_stock')
    op.drop_table('stock_items')
    op.drop_table('branches')
    op.drop_table('tenants')
