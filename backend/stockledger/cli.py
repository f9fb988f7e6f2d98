# Overview: Flask CLI command group for bootstrap and inspection.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask ledger <command> [options]
#
# - python -m flask ledger init-sequences
#   Create missing document sequences (MOVEMENT, STOCK_TAKE). Idempotent.
# - python -m flask ledger balances [--warehouse-id 1] [--location-id 3] [--include-zero]
#   Print quantity on hand per product/variant/location.
# - python -m flask ledger reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask.cli import with_appcontext

from .extensions import db
from .quantities import format_quantity
from .services.document_service import ensure_sequences, list_sequences
from .services.posting_service import list_balances


@click.group('ledger')
def ledger_group():
    """Stock ledger bootstrap and inspection commands."""


@ledger_group.command('init-sequences')
@with_appcontext
def init_sequences():
    """Create default document sequences that do not exist yet."""
    created = ensure_sequences()
    db.session.commit()

    for doc_type in created:
        click.echo(f"PASS Created sequence: {doc_type}")
    if not created:
        click.echo("PASS All sequences already exist")

    for seq in list_sequences():
        click.echo(f"  {seq.document_type:<12} prefix={seq.prefix:<4} pad={seq.pad_length} next={seq.next_number}")


@ledger_group.command('balances')
@click.option('--warehouse-id', type=int, default=None, help='Only locations of this warehouse')
@click.option('--location-id', type=int, default=None, help='Only this location')
@click.option('--include-zero', is_flag=True, help='Show keys with zero on hand')
@with_appcontext
def show_balances(warehouse_id, location_id, include_zero):
    """List quantity on hand."""
    balances = list_balances(
        warehouse_id=warehouse_id,
        location_id=location_id,
        include_zero=include_zero,
    )
    if not balances:
        click.echo("No balances found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'Location':<10} {'Product':<10} {'Variant':<10} {'On hand':>15}")
    click.echo("="*70)
    for b in balances:
        variant = b.variant_id if b.variant_id is not None else "-"
        click.echo(f"{b.location_id:<10} {b.product_id:<10} {variant:<10} {format_quantity(b.quantity_on_hand):>15}")
    click.echo("="*70 + "\n")


@ledger_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask ledger init-sequences' to initialize.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
