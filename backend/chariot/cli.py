# Overview: Flask CLI command groups for bootstrap, ledger reconciliation, and maintenance.

# backend/chariot/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--company "Harbor Marine"] [--location "Main Yard"]
#   Idempotent: creates the default company and location.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger:
# - python -m flask ledger reconcile [--older-than 300] [--limit 100]
#   Resolve pending gateway transactions from the provider's status.
# - python -m flask ledger balance 42
#   Print the computed balance for an order.
# - python -m flask ledger verify [--fix]
#   Compare cached order totals/balances against a full recompute.
#
# Orders:
# - python -m flask orders recompute [--order-id 42]
#   Rebuild rollup and ledger caches.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Company, Location, Order
from .services import ledger_service, reconciliation_service
from .services.concurrency import lock_order, run_with_retry
from .services.rollup import refresh_order_totals, totals_for_order


def _dollars(cents: int | None) -> str:
    if cents is None:
        return "-"
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}${whole}.{frac:02d}"


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--company', 'company_name', default='Default Company', help='Company name')
@click.option('--company-code', default='DEFAULT', help='Company code')
@click.option('--location', 'location_name', default='Main Yard', help='Location name')
@click.option('--location-code', default='MAIN', help='Location code')
@with_appcontext
def init_system(company_name, company_code, location_name, location_code):
    """Create the default company and location if they do not exist."""
    company = db.session.query(Company).filter_by(code=company_code).first()
    if not company:
        company = Company(name=company_name, code=company_code)
        db.session.add(company)
        db.session.commit()
        click.echo(f"PASS Created company: {company.name} (ID: {company.id})")
    else:
        click.echo(f"PASS Using existing company: {company.name} (ID: {company.id})")

    location = db.session.query(Location).filter_by(company_id=company.id, code=location_code).first()
    if not location:
        location = Location(company_id=company.id, name=location_name, code=location_code)
        db.session.add(location)
        db.session.commit()
        click.echo(f"PASS Created location: {location.name} (ID: {location.id})")
    else:
        click.echo(f"PASS Using existing location: {location.name} (ID: {location.id})")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


# =============================================================================
# LEDGER
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Order ledger commands."""


@ledger_group.command('reconcile')
@click.option('--older-than', 'older_than', type=int, default=None,
              help='Only rows pending at least this many seconds (default: RECONCILE_PENDING_AFTER_SECONDS)')
@click.option('--limit', type=int, default=None, help='Max rows (default: RECONCILE_BATCH_SIZE)')
@with_appcontext
def reconcile_cli(older_than, limit):
    """Resolve pending gateway transactions."""
    report = reconciliation_service.reconcile_pending(older_than_seconds=older_than, limit=limit)
    click.echo(
        f"Examined {report.examined}: {report.succeeded} succeeded, {report.failed} failed, "
        f"{report.still_pending} still pending"
    )
    for txn_id in report.needs_review:
        click.echo(f"REVIEW transaction {txn_id}: no provider id and idempotency window expired")
    for err in report.errors:
        click.echo(f"ERROR transaction {err['transaction_id']}: {err['error']}")


@ledger_group.command('balance')
@click.argument('order_id', type=int)
@with_appcontext
def balance_cli(order_id):
    """Print the computed balance for ORDER_ID."""
    try:
        bal = ledger_service.balance(order_id)
    except ledger_service.LedgerNotFound as e:
        click.echo(str(e))
        raise SystemExit(1)

    for label, value in (
        ("Total", bal.total_cents),
        ("Paid", bal.paid_cents),
        ("Refunded", bal.refunded_cents),
        ("Adjustments", bal.adjustment_cents),
        ("Due", bal.due_cents),
        ("Credit", bal.credit_cents),
        ("Pending", bal.pending_cents),
        ("Held", bal.held_cents),
        ("Authorized", bal.authorized_cents),
        ("Auth remaining", bal.authorized_remaining_cents),
    ):
        click.echo(f"{label:<16} {_dollars(value):>14}")
    click.echo(f"{'Status':<16} {bal.payment_status:>14}")


@ledger_group.command('verify')
@click.option('--fix', is_flag=True, help='Rewrite caches that drifted')
@with_appcontext
def verify_cli(fix):
    """Compare cached totals and balances against a full recompute."""
    drifted = 0
    orders = db.session.query(Order).order_by(Order.id).all()
    for order in orders:
        totals = totals_for_order(order)
        bal = ledger_service.compute_balance(
            totals.total_cents,
            ledger_service.get_transactions(order.id),
            ledger_service.authorized_total(order.id),
        )
        problems = []
        if order.calculated_total_cents != totals.total_cents:
            problems.append(f"total {order.calculated_total_cents} != {totals.total_cents}")
        if order.due_cents != bal.due_cents:
            problems.append(f"due {order.due_cents} != {bal.due_cents}")
        if order.credit_cents != bal.credit_cents:
            problems.append(f"credit {order.credit_cents} != {bal.credit_cents}")
        if not problems:
            continue
        drifted += 1
        click.echo(f"DRIFT {order.order_number} (ID {order.id}): {'; '.join(problems)}")
        if fix:
            _recompute_order(order.id)
    click.echo(f"Checked {len(orders)} orders, {drifted} drifted{' (fixed)' if fix and drifted else ''}")


# =============================================================================
# ORDERS
# =============================================================================

def _recompute_order(order_id: int) -> None:
    def _op():
        order = lock_order(order_id)
        if order is None:
            raise ledger_service.LedgerNotFound(f"Order {order_id} not found")
        totals = refresh_order_totals(order)
        ledger_service.refresh_order_balance(order, totals.total_cents)
        db.session.commit()

    run_with_retry(_op)


@click.group('orders')
def orders_group():
    """Work order maintenance commands."""


@orders_group.command('recompute')
@click.option('--order-id', type=int, default=None, help='Single order (default: all)')
@with_appcontext
def recompute_cli(order_id):
    """Rebuild rollup and ledger caches from line items and transactions."""
    if order_id:
        ids = [order_id]
    else:
        ids = [row.id for row in db.session.query(Order.id).order_by(Order.id).all()]
    for oid in ids:
        try:
            _recompute_order(oid)
        except ledger_service.LedgerNotFound as e:
            db.session.rollback()
            click.echo(str(e))
            raise SystemExit(1)
    click.echo(f"Recomputed {len(ids)} orders.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(orders_group)
