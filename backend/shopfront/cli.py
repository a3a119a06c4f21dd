# Overview: Flask CLI command groups for bootstrap, staff setup, and inventory maintenance.

# backend/shopfront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and default admin/manager/seller accounts.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Accounts and staff:
# - python -m flask users create --email buyer@example.com --password "Password123!" --name "Jane"
#   Create an account (prompts if options are omitted).
# - python -m flask employees create --email staff@example.com --role seller
#   Give an existing account a staff role.
# - python -m flask employees list
#   List staff with role and last commission payout.
#
# Inventory:
# - python -m flask inventory set-stock --product-id <uuid> --stock 10 --size M=4 --size L=6 --color red=3
#   Set absolute stock for a product's scopes.
# - python -m flask inventory release-stale --older-than-minutes 30
#   Release ACTIVE reservations from abandoned checkouts.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .services.auth_service import create_user, create_employee, list_employees, PasswordValidationError
from .services import inventory_service
from .validation import ConflictError, NotFoundError, ValidationError
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Create tables and default staff accounts.

    Creates:
    - admin@shopfront.local   (admin)
    - manager@shopfront.local (manager)
    - seller@shopfront.local  (seller)
    - All passwords default to: "Password123!"

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing shopfront...")
    db.create_all()

    default_password = "Password123!"
    default_staff = [
        ("admin@shopfront.local", "Admin", "admin"),
        ("manager@shopfront.local", "Manager", "manager"),
        ("seller@shopfront.local", "Seller", "seller"),
    ]

    for email, name, role in default_staff:
        try:
            user = db.session.query(User).filter_by(email=email).first()
            if user is None:
                user = create_user(email, default_password, full_name=name)
                click.echo(f"PASS Created user: {email}")
            else:
                click.echo(f"WARN  User '{email}' already exists, skipping...")

            if user.employee is None:
                employee = create_employee(email, role)
                click.echo(f"PASS {email} is now {role} ({employee.employee_code})")

        except PasswordValidationError as e:
            click.echo(f"FAIL Password validation failed for '{email}': {str(e)}")
        except (ValidationError, ConflictError, NotFoundError) as e:
            click.echo(f"FAIL Failed to set up '{email}': {str(e)}")

    click.echo("\nDefault Credentials (CHANGE IN PRODUCTION!):")
    for email, _, role in default_staff:
        click.echo(f"   {role:<8} -> {email} / {default_password}")


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
    click.echo("PASS Database reset complete")


# =============================================================================
# ACCOUNTS AND STAFF
# =============================================================================

@click.group('users')
def users_group():
    """Account commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--name', 'full_name', default=None, help='Full name')
@click.option('--phone', default=None, help='Phone number')
@with_appcontext
def create_user_cli(email, password, full_name, phone):
    try:
        user = create_user(email, password, full_name=full_name, phone=phone)
    except PasswordValidationError as e:
        raise click.ClickException(f"Password validation failed: {e}")
    except (ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user: {user.email} (ID: {user.id})")


@click.group('employees')
def employees_group():
    """Staff commands."""


@employees_group.command('create')
@click.option('--email', prompt=True, help='Email of an existing account')
@click.option('--role', type=click.Choice(['admin', 'manager', 'seller']), prompt=True, help='Role')
@with_appcontext
def create_employee_cli(email, role):
    try:
        employee = create_employee(email, role)
    except (ValidationError, ConflictError, NotFoundError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {email} is now {role} ({employee.employee_code}, ID: {employee.id})")


@employees_group.command('list')
@with_appcontext
def list_employees_cli():
    employees = list_employees()
    if not employees:
        click.echo("No employees found")
        return
    for employee in employees:
        paid = to_utc_z(employee.last_commission_payment_date) or "never"
        email = employee.user.email if employee.user else "?"
        click.echo(f"{employee.employee_code:<12} {employee.role:<8} {email:<32} last paid: {paid}")


# =============================================================================
# INVENTORY
# =============================================================================

def _parse_pairs(values, option: str) -> dict:
    pairs = {}
    for raw in values:
        key, sep, qty = raw.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=QTY, got {raw!r}", param_hint=option)
        try:
            pairs[key.strip()] = int(qty)
        except ValueError:
            raise click.BadParameter(f"quantity must be an integer in {raw!r}", param_hint=option)
    return pairs


@click.group('inventory')
def inventory_group():
    """Inventory maintenance commands."""


@inventory_group.command('set-stock')
@click.option('--product-id', required=True, help='Product UUID')
@click.option('--stock', type=int, default=0, show_default=True, help='General stock quantity')
@click.option('--size', 'sizes', multiple=True, help='SIZE=QTY, repeatable')
@click.option('--color', 'colors', multiple=True, help='COLOR=QTY, repeatable')
@with_appcontext
def set_stock_cli(product_id, stock, sizes, colors):
    size_stocks = _parse_pairs(sizes, "--size") if sizes else None
    color_stocks = _parse_pairs(colors, "--color") if colors else None
    try:
        record = inventory_service.set_product_stock(
            product_id,
            stock_quantity=stock,
            size_stocks=size_stocks,
            color_stocks=color_stocks,
        )
    except (ValidationError, ConflictError, NotFoundError) as e:
        raise click.ClickException(str(e))
    click.echo(
        f"PASS Stock set for {product_id}: stock={record.stock_quantity} reserved={record.reserved_quantity}"
    )


@inventory_group.command('release-stale')
@click.option('--older-than-minutes', type=click.IntRange(min=1), default=30, show_default=True)
@with_appcontext
def release_stale_cli(older_than_minutes):
    """Release reservations left ACTIVE by abandoned or crashed checkouts."""
    released = inventory_service.release_stale_reservations(timedelta(minutes=older_than_minutes))
    click.echo(f"PASS Released {released} stale reservation(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(employees_group)
    app.cli.add_command(inventory_group)
