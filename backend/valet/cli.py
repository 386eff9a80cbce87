# Overview: Flask CLI command groups for bootstrap, seed data and ticket inspection.

# backend/valet/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Locations:
# - python -m flask locations seed
#   Create or refresh the demo locations (hampton, hyatt).
# - python -m flask locations list
#   List locations with their tier schedules.
# - python -m flask locations set-tiers hampton '[{"max_hours": 3, "rate_cents": 2000}, {"max_hours": null, "rate_cents": 4600, "in_out_allowed": true}]'
#   Replace a location's tier schedule (validated).
#
# Tickets:
# - python -m flask tickets list --location hampton --status CHECKED_IN
#   List tickets with projected / paid / outstanding amounts.
# - python -m flask tickets summary
#   Counts and projected revenue per location.

import json

import click
from flask.cli import with_appcontext

from .errors import ValetError
from .extensions import db
from .services import location_service, ticket_service
from .services.pricing_service import format_cents


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
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

    click.echo("PASS Database reset complete. Run 'python -m flask locations seed' to add demo locations.")


@click.group('locations')
def locations_group():
    """Location and rate schedule commands."""


@locations_group.command('seed')
@with_appcontext
def seed_locations_cli():
    """Create or refresh the demo locations."""
    for location in location_service.seed_locations():
        click.echo(f"PASS {location.identifier}: {location.name}")


@locations_group.command('list')
@with_appcontext
def list_locations_cli():
    locations = location_service.list_locations()
    if not locations:
        click.echo("No locations. Run 'python -m flask locations seed'.")
        return
    for location in locations:
        click.echo(
            f"{location.id:>3}  {location.identifier:<12} {location.name:<24} "
            f"overnight {format_cents(location.overnight_rate_cents)}"
            f"{' (in/out)' if location.overnight_in_out_allowed else ''}"
        )
        for tier in location.pricing_tiers or []:
            limit = f"<= {tier['max_hours']}h" if tier.get("max_hours") is not None else "unlimited"
            in_out = " in/out" if tier.get("in_out_allowed") else ""
            click.echo(f"       {limit:<12} {format_cents(tier['rate_cents'])}{in_out}")


@locations_group.command('set-tiers')
@click.argument('identifier')
@click.argument('tiers_json')
@with_appcontext
def set_tiers_cli(identifier, tiers_json):
    """Replace a location's pricing tiers with a JSON list."""
    try:
        tiers = json.loads(tiers_json)
    except ValueError as e:
        raise click.BadParameter(f"Invalid JSON: {e}")

    try:
        location = location_service.get_location_by_identifier(identifier)
        location_service.update_location(location.id, {"pricing_tiers": tiers}, actor="cli")
    except ValetError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Updated tiers for {identifier}")


@click.group('tickets')
def tickets_group():
    """Ticket inspection commands."""


@tickets_group.command('list')
@click.option('--location', 'identifier', help='Location identifier')
@click.option('--status', help='Ticket status filter')
@with_appcontext
def list_tickets_cli(identifier, status):
    try:
        location_id = location_service.get_location_by_identifier(identifier).id if identifier else None
        tickets, _ = ticket_service.list_tickets(location_id=location_id, status=status)
    except ValetError as e:
        raise click.ClickException(e.message)

    if not tickets:
        click.echo("No tickets found.")
        return
    for t in tickets:
        click.echo(
            f"{t['ticket_number']:<10} {t['status']:<17} {t['vehicle_status']:<8} "
            f"{t['elapsed_hours']:>6.1f}h  projected {format_cents(t['projected_amount_cents']):>9}  "
            f"paid {format_cents(t['amount_paid_cents']):>9}  due {format_cents(t['outstanding_amount_cents']):>9}"
        )


@tickets_group.command('summary')
@with_appcontext
def tickets_summary_cli():
    for location in location_service.list_locations():
        _, metrics = ticket_service.list_tickets(location_id=location.id)
        click.echo(
            f"{location.identifier:<12} total {metrics['total']:>4}  with us {metrics['with_us']:>4}  "
            f"away {metrics['away']:>4}  ready {metrics['ready']:>4}  "
            f"projected {format_cents(metrics['projected_revenue_cents'])}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(locations_group)
    app.cli.add_command(tickets_group)
