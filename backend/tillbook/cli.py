# Overview: Flask CLI command groups for the outbox worker and ledger inspection.

# backend/tillbook/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Outbox:
# - python -m flask outbox dispatch [--batch-size 100]
#   Deliver one batch of undelivered events and print the result.
# - python -m flask outbox run [--poll-interval 1.0] [--max-batches N]
#   Run the dispatcher loop until interrupted (Ctrl+C).
# - python -m flask outbox pending [--tenant-id 1] [--list]
#   Show how many events are waiting for delivery.
#
# Inventory inspection:
# - python -m flask inventory on-hand --tenant-id 1 --branch-id 1 --stock-item-id 3 [--as-of 2026-01-01T00:00:00Z]
#   Stock on hand derived from the journal.
# - python -m flask inventory low-stock --tenant-id 1 --branch-id 1
#   Items at or below their branch threshold.
# - python -m flask inventory exceptions --tenant-id 1 --branch-id 1
#   Items whose derived stock is negative.
# - python -m flask inventory journal --tenant-id 1 --branch-id 1 [--stock-item-id 3] [--reason waste] [--page 1]
#   Journal entries in replay order.
#
# Cash sessions:
# - python -m flask cash sessions --tenant-id 1 [--branch-id 1] [--status OPEN] [--limit 20]
#   List recent cash sessions.
# - python -m flask cash report --tenant-id 1 --session-id 7
#   Z-report (X-report while the session is still open).
# - python -m flask cash totals --tenant-id 1 --session-id 7
#   Cash in / out / net / expected per currency.

import json
import threading

import click
from flask import current_app
from flask.cli import with_appcontext
from sqlalchemy import select

from .errors import DomainError
from .models import CashSession
from .models.cash import SESSION_STATUSES
from .time_utils import parse_iso_datetime, to_utc_z


def _services():
    return current_app.extensions["tillbook"]


# =============================================================================
# OUTBOX
# =============================================================================

@click.group('outbox')
def outbox_group():
    """Outbox delivery commands."""


@outbox_group.command('dispatch')
@click.option('--batch-size', type=int, help='Max events to claim (defaults to OUTBOX_BATCH_SIZE)')
@with_appcontext
def dispatch_cli(batch_size):
    """Deliver one batch of undelivered outbox events."""
    try:
        result = _services().dispatcher.dispatch(batch_size)
    except DomainError as e:
        click.echo(f"FAIL Error: {e.message}")
        return
    if result.error:
        click.echo(f"FAIL Batch error: {result.error}")
    click.echo(f"PASS Claimed {result.claimed}, delivered {result.delivered}, failed {result.failed}")
    if result.failed_ids:
        click.echo(f"WARN  Failed event IDs: {', '.join(str(i) for i in result.failed_ids)}")


@outbox_group.command('run')
@click.option('--poll-interval', type=float, help='Seconds between polls (defaults to OUTBOX_POLL_INTERVAL_SECONDS)')
@click.option('--max-batches', type=int, help='Stop after this many batches')
@with_appcontext
def run_cli(poll_interval, max_batches):
    """Run the dispatcher loop until interrupted."""
    stop_event = threading.Event()
    dispatcher = _services().dispatcher
    current_app.logger.info("Outbox dispatcher starting")
    try:
        delivered = dispatcher.run(poll_interval, stop_event, max_batches=max_batches)
    except KeyboardInterrupt:
        stop_event.set()
        click.echo("Outbox dispatcher stopped")
        return
    click.echo(f"PASS Delivered {delivered} events")


@outbox_group.command('pending')
@click.option('--tenant-id', type=int, help='Only count this tenant')
@click.option('--list', 'show_list', is_flag=True, help='List the oldest undelivered events')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def pending_cli(tenant_id, show_list, limit):
    """Show undelivered outbox events."""
    dispatcher = _services().dispatcher
    stats = dispatcher.pending(tenant_id)
    oldest = to_utc_z(stats["oldest_created_at"]) or "-"
    click.echo(f"Pending: {stats['pending']} (oldest: {oldest})")

    if not show_list:
        return

    records = dispatcher.list_unsent(limit)
    if tenant_id is not None:
        records = [r for r in records if r.tenant_id == tenant_id]
    if not records:
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<7} {'Tenant':<8} {'Type':<34} {'Created':<22} {'Attempts':<9} {'Last error'}")
    click.echo("="*100)
    for record in records:
        error = (record.last_error or "-")[:30]
        click.echo(f"{record.id:<7} {record.tenant_id:<8} {record.type:<34} "
                   f"{to_utc_z(record.created_at):<22} {record.attempts:<9} {error}")
    click.echo("="*100 + "\n")


# =============================================================================
# INVENTORY
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Inventory ledger inspection commands."""


@inventory_group.command('on-hand')
@click.option('--tenant-id', type=int, required=True)
@click.option('--branch-id', type=int, required=True)
@click.option('--stock-item-id', type=int, required=True)
@click.option('--as-of', help='ISO-8601 timestamp (inclusive)')
@with_appcontext
def on_hand_cli(tenant_id, branch_id, stock_item_id, as_of):
    """Print stock on hand for one item."""
    try:
        as_of_dt = parse_iso_datetime(as_of) if as_of else None
    except ValueError:
        click.echo("FAIL Error: --as-of must be ISO-8601")
        return
    qty = _services().projector.on_hand(tenant_id, branch_id, stock_item_id, as_of=as_of_dt)
    click.echo(f"Stock item {stock_item_id} on hand: {qty}")


@inventory_group.command('low-stock')
@click.option('--tenant-id', type=int, required=True)
@click.option('--branch-id', type=int, required=True)
@with_appcontext
def low_stock_cli(tenant_id, branch_id):
    """List items at or below their branch threshold."""
    alerts = _services().projector.low_stock_alerts(tenant_id, branch_id)
    if not alerts:
        click.echo("No low-stock items.")
        return
    click.echo(f"{'Stock item':<12} {'On hand':>14} {'Threshold':>14}")
    for alert in alerts:
        click.echo(f"{alert['stock_item_id']:<12} {str(alert['on_hand']):>14} {str(alert['min_threshold']):>14}")


@inventory_group.command('exceptions')
@click.option('--tenant-id', type=int, required=True)
@click.option('--branch-id', type=int, required=True)
@with_appcontext
def exceptions_cli(tenant_id, branch_id):
    """List items with negative derived stock."""
    exceptions = _services().projector.inventory_exceptions(tenant_id, branch_id)
    if not exceptions:
        click.echo("No inventory exceptions.")
        return
    for item in exceptions:
        click.echo(f"WARN  Stock item {item['stock_item_id']} is negative: {item['on_hand']}")


@inventory_group.command('journal')
@click.option('--tenant-id', type=int, required=True)
@click.option('--branch-id', type=int, required=True)
@click.option('--stock-item-id', type=int)
@click.option('--reason')
@click.option('--page', type=int, default=1, show_default=True)
@click.option('--page-size', type=int, default=20, show_default=True)
@with_appcontext
def journal_cli(tenant_id, branch_id, stock_item_id, reason, page, page_size):
    """Print journal entries as JSON lines."""
    try:
        result = _services().inventory.get_journal(
            tenant_id, branch_id,
            stock_item_id=stock_item_id, reason=reason, page=page, page_size=page_size,
        )
    except DomainError as e:
        click.echo(f"FAIL Error: {e.message}")
        return
    for entry in result["entries"]:
        click.echo(json.dumps(entry))
    if result["next_page"]:
        click.echo(f"... more entries on page {result['next_page']}")


# =============================================================================
# CASH
# =============================================================================

@click.group('cash')
def cash_group():
    """Cash session inspection commands."""


@cash_group.command('sessions')
@click.option('--tenant-id', type=int, required=True)
@click.option('--branch-id', type=int, help='Filter by branch ID')
@click.option('--status', type=click.Choice(SESSION_STATUSES), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Max sessions to show')
@with_appcontext
def list_sessions_cli(tenant_id, branch_id, status, limit):
    """
    List cash sessions.

    Example:
        flask cash sessions --tenant-id 1
        flask cash sessions --tenant-id 1 --status PENDING_REVIEW
    """
    def _op(session):
        stmt = select(CashSession).where(CashSession.tenant_id == tenant_id)
        if branch_id:
            stmt = stmt.where(CashSession.branch_id == branch_id)
        if status:
            stmt = stmt.where(CashSession.status == status)
        stmt = stmt.order_by(CashSession.opened_at.desc()).limit(limit)
        return list(session.scalars(stmt))

    sessions = _services().tx.with_transaction(_op)
    if not sessions:
        click.echo("No sessions found.")
        return

    click.echo("\n" + "="*110)
    click.echo(f"{'ID':<6} {'Branch':<7} {'Register':<9} {'Status':<15} {'Responsible':<12} {'Opened':<22} {'Variance USD'}")
    click.echo("="*110)
    for s in sessions:
        register = s.register_id if s.register_id is not None else "-"
        variance = f"{s.variance_usd:+}" if s.variance_usd is not None else "-"
        click.echo(f"{s.id:<6} {s.branch_id:<7} {register:<9} {s.status:<15} {s.responsible_actor_id:<12} "
                   f"{to_utc_z(s.opened_at):<22} {variance}")
    click.echo("="*110 + "\n")


@cash_group.command('report')
@click.option('--tenant-id', type=int, required=True)
@click.option('--session-id', type=int, required=True)
@with_appcontext
def report_cli(tenant_id, session_id):
    """Print the Z-report for a session as JSON."""
    try:
        report = _services().cash.session_report(tenant_id, session_id)
    except DomainError as e:
        click.echo(f"FAIL Error: {e.message}")
        return
    click.echo(json.dumps(report, indent=2))


@cash_group.command('totals')
@click.option('--tenant-id', type=int, required=True)
@click.option('--session-id', type=int, required=True)
@with_appcontext
def totals_cli(tenant_id, session_id):
    """Print cash in / out / net / expected for a session."""
    try:
        totals = _services().projector.session_totals(tenant_id, session_id)
    except DomainError as e:
        click.echo(f"FAIL Error: {e.message}")
        return
    click.echo(json.dumps(totals.to_dict(), indent=2))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(outbox_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(cash_group)
