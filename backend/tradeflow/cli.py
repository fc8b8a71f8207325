# Overview: Flask CLI command groups for periodic sweeps, diagnostics, and maintenance.

# backend/tradeflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Sweeps (schedule from cron):
# - python -m flask sweeps expire-bids
#   Award the best offer on every order whose bidding window has closed.
# - python -m flask sweeps timeout-routings
#   Time out silent candidates on expired routings; fail orders nobody accepted.
# - python -m flask sweeps dispatch-notifications [--limit 500]
#   Redeliver queued notifications that were not sent after commit.
# - python -m flask sweeps suspend-overdue
#   Block credit accounts that carry overdue debits.
#
# Diagnostics:
# - python -m flask stock detect-negative
#   List stock positions that are negative, over-reserved, or fail reconciliation.
# - python -m flask ledger audit [--retailer-id 1 --wholesaler-id 2]
#   Replay ledgers and compare with the aggregate balance.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import build_services
from .time_utils import parse_iso_datetime, utcnow


def _services():
    return build_services(
        db.session,
        current_app.config,
        current_app.logger,
        gateway=current_app.extensions.get("tradeflow_gateway"),
    )


def _now(value):
    if not value:
        return utcnow()
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise click.BadParameter("must be an ISO-8601 datetime", param_hint="--now") from None


now_option = click.option("--now", "now_value", default=None, help="Evaluate as of this ISO-8601 time (default: now)")


@click.group('sweeps')
def sweeps_group():
    """Periodic sweeps."""


@sweeps_group.command('expire-bids')
@now_option
@with_appcontext
def expire_bids_cli(now_value):
    """Close bidding on expired orders and award the best remaining offer."""
    results = _services().sweeps.expire_bids(_now(now_value))

    if not results:
        click.echo("No expired orders.")
        return
    for r in results:
        line = f"Order {r['order_id']}: {r['outcome']}"
        if r.get("wholesaler_id"):
            line += f" -> wholesaler {r['wholesaler_id']}"
        if r.get("error"):
            line += f" ({r['error']['code']})"
        click.echo(line)
    awarded = sum(1 for r in results if r["outcome"] == "AWARDED")
    click.echo(f"PASS {awarded}/{len(results)} expired orders awarded.")


@sweeps_group.command('timeout-routings')
@now_option
@with_appcontext
def timeout_routings_cli(now_value):
    """Mark silent candidates TIMEOUT on expired routings."""
    services = _services()
    results = services.sweeps.timeout_routings(_now(now_value))

    if not results:
        click.echo("No expired routings.")
        return
    for r in results:
        if "error" in r:
            click.echo(f"Routing {r['routing_id']}: ERROR {r['error']['code']}")
            continue
        timed_out = ", ".join(str(w) for w in r["timed_out"]) or "-"
        status = "NO_WINNER" if r["no_winner"] else "open"
        click.echo(f"Routing {r['routing_id']}: timed out [{timed_out}] {status}")


@sweeps_group.command('dispatch-notifications')
@click.option('--limit', type=int, default=500, show_default=True)
@with_appcontext
def dispatch_notifications_cli(limit):
    """Send pending outbox rows."""
    summary = _services().sweeps.dispatch_notifications(limit=limit)
    click.echo(
        f"Sent {summary['sent']}, retry {summary['retry']}, "
        f"failed {summary['failed']}, skipped {summary['skipped']}."
    )


@sweeps_group.command('suspend-overdue')
@now_option
@with_appcontext
def suspend_overdue_cli(now_value):
    """Block accounts with overdue debits."""
    blocked = _services().sweeps.suspend_overdue(_now(now_value))
    for row in blocked:
        click.echo(
            f"WARN Blocked retailer {row['retailer_id']} / wholesaler {row['wholesaler_id']} "
            f"overdue {row['overdue_cents']}"
        )
    click.echo(f"{len(blocked)} account(s) suspended.")


@click.group('stock')
def stock_group():
    """Stock diagnostics."""


@stock_group.command('detect-negative')
@with_appcontext
def detect_negative_cli():
    """Report inconsistent stock positions. Exits 1 if any are found."""
    findings = _services().stock.detect_negative_stock()
    if not findings:
        click.echo("PASS All stock positions consistent.")
        return
    for f in findings:
        click.echo(
            f"FAIL wholesaler {f['wholesaler_id']} product {f['product_id']}: "
            f"stock={f['stock']} reserved={f['reserved_stock']} problems={','.join(f['problems'])}"
        )
    raise SystemExit(1)


@click.group('ledger')
def ledger_group():
    """Ledger inspection."""


@ledger_group.command('audit')
@click.option('--retailer-id', type=int, help='Audit a single retailer (requires --wholesaler-id)')
@click.option('--wholesaler-id', type=int, help='Audit a single wholesaler (requires --retailer-id)')
@with_appcontext
def ledger_audit_cli(retailer_id, wholesaler_id):
    """Replay every ledger and compare with the aggregate balance."""
    if (retailer_id is None) != (wholesaler_id is None):
        raise click.UsageError("--retailer-id and --wholesaler-id must be given together")

    ledger = _services().ledger
    pairs = [(retailer_id, wholesaler_id)] if retailer_id is not None else ledger.pairs()
    bad = 0
    for r, w in pairs:
        audit = ledger.audit_pair(r, w)
        mark = "PASS" if audit["consistent"] else "FAIL"
        if not audit["consistent"]:
            bad += 1
        click.echo(
            f"{mark} retailer {r} / wholesaler {w}: entries={audit['entry_count']} "
            f"balance={audit['computed_balance_cents']} replayed={audit['replayed_balance_cents']}"
        )
    if bad:
        raise SystemExit(1)


@click.group('system')
def system_group():
    """System maintenance commands."""


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

    click.echo("PASS Database reset complete.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(sweeps_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(system_group)
