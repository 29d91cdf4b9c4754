# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/tubeshop/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-email admin@tubeshop.local --admin-password "Password123"]
#   Idempotent bootstrap: creates all tables and, optionally, an admin account.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create-admin --email admin@tubeshop.local --password "Password123"
#   Create a back-office admin (prompts if options are omitted).
# - python -m flask users list
#   List all accounts with admin and active flags.
#
# Orders:
# - python -m flask orders expire-deposits [--limit 100]
#   Run the deposit expiry sweep once (same as POST /api/cron/expire-deposits).
#
# Maintenance:
# - python -m flask maintenance purge-tokens [--session-retention-days 30]
#   Drop expired tracking tokens / rate-limit entries and old sessions.

import click
from flask.cli import with_appcontext

from .errors import OrderError
from .extensions import db
from .models import User
from .services import expiry_service, session_service
from .services.auth_service import create_user
from .services.kv_store import get_kv_store


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-email', default=None, help='Create an admin account with this email')
@click.option('--admin-password', default=None, help='Password for the admin account')
@with_appcontext
def init_system(admin_email, admin_password):
    """
    Initialize the TubeShop database.

    Creates every table that does not exist yet. With --admin-email and
    --admin-password, also creates an admin account (skipped if the email
    is already registered).
    """
    click.echo("START Initializing TubeShop...")
    db.create_all()
    click.echo("PASS Tables created")

    if admin_email:
        if not admin_password:
            click.echo("FAIL --admin-password is required with --admin-email")
            return
        existing = db.session.query(User).filter_by(email=admin_email.strip().lower()).first()
        if existing:
            click.echo(f"WARN  User '{existing.email}' already exists, skipping...")
        else:
            try:
                user = create_user(admin_email, admin_password, is_admin=True)
                click.echo(f"PASS Created admin: {user.email} (ID: {user.id})")
            except OrderError as e:
                click.echo(f"FAIL Failed to create admin: {e.message}")

    click.echo("DONE TubeShop initialized")


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
    click.echo("PASS Database reset")


@click.group('users')
def users_group():
    """Account commands."""


@users_group.command('create-admin')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--full-name', default=None, help='Display name')
@with_appcontext
def create_admin_cli(email, password, full_name):
    """
    Create a back-office admin.

    Password must be at least 8 characters with a letter and a digit.
    """
    try:
        user = create_user(email, password, full_name=full_name, is_admin=True)
    except OrderError as e:
        click.echo(f"FAIL Failed to create admin: {e.message}")
        return
    click.echo(f"PASS Created admin: {user.email} (ID: {user.id})")
    click.echo("SECURITY Password securely hashed with bcrypt")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all accounts."""
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "=" * 80)
    click.echo(f"{'ID':<5} {'Email':<40} {'Admin':<8} {'Active':<8}")
    click.echo("=" * 80)
    for user in users:
        admin_str = "Yes" if user.is_admin else "No"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.email:<40} {admin_str:<8} {active_str:<8}")
    click.echo("=" * 80 + "\n")


@click.group('orders')
def orders_group():
    """Order lifecycle commands."""


@orders_group.command('expire-deposits')
@click.option('--limit', type=int, default=None, help='Maximum orders to process')
@with_appcontext
def expire_deposits_cli(limit):
    """Expire overdue deposit reservations and restore their stock."""
    result = expiry_service.sweep(limit=limit)
    for row in result["results"]:
        click.echo(f"{row['orderCode']}: {row['outcome']}")
    click.echo(
        f"Expired {result['expiredCount']}, failed {result['failedCount']}, "
        f"skipped {result['skippedCount']}."
    )
    if result["failedCount"]:
        raise SystemExit(1)


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-tokens')
@click.option('--session-retention-days', type=int, default=30, show_default=True)
@with_appcontext
def purge_tokens_cli(session_retention_days):
    """
    Drop expired key/value entries (tracking tokens, rate-limit windows)
    and sessions that ended more than the retention window ago.
    """
    purged = get_kv_store().purge_expired()
    deleted = session_service.cleanup_expired_sessions(retention_days=session_retention_days)
    click.echo(f"Purged {purged} expired key/value entries.")
    click.echo(f"Deleted {deleted} sessions older than {session_retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(maintenance_group)
