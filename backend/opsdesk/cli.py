# Overview: Flask CLI command groups for bootstrap and the periodic jobs.

# backend/opsdesk/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create all tables (idempotent; no-op for existing tables).
# - python -m flask system create-business --name "Studio Bella" --email owner@studio.com --password "secret123"
#   Create a business (tenant) with its owner user.
#
# Periodic jobs (schedule these from cron; each is safe to re-run):
# - python -m flask jobs process-billing        every hour
#   Charge active subscriptions whose next billing date has passed.
# - python -m flask jobs expire-charges         every 15 minutes
#   Expire overdue PIX charges; subscription charges get a retry charge.
# - python -m flask jobs payment-reminders      every hour
#   WhatsApp reminder for PIX charges pending longer than the reminder interval.
# - python -m flask jobs proposal-follow-ups    every hour
#   One follow-up for proposals sent 48h ago without an answer.
# - python -m flask jobs expire-proposals       daily
#   Expire pending/sent/viewed proposals past valid_until.
# - python -m flask jobs low-stock [--business-id 1]
#   Report items at or below minimum stock.
# - python -m flask jobs inactive-customers [--days 60]   daily
#   Create reactivation tasks for customers without recent visits.
# - python -m flask jobs daily-report [--day 2024-05-01]   every evening
#   Email each business owner the day's closing (income by method, expenses, balance).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Business
from .errors import DomainError
from .services import (
    auth_service,
    finance_service,
    inventory_service,
    pix_service,
    proposal_service,
    subscription_service,
    task_service,
)


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create all database tables for a fresh install (dev/test)."""
    click.echo("START Initializing OpsDesk database...")
    db.create_all()
    click.echo("PASS Tables created")


@system_group.command('create-business')
@click.option('--name', 'business_name', required=True, help='Business name')
@click.option('--email', required=True, help='Owner login email')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Owner password')
@click.option('--owner-name', default=None, help='Owner display name')
@with_appcontext
def create_business(business_name, email, password, owner_name):
    """Create a business (tenant) with its owner user."""
    try:
        business, user = auth_service.create_business_with_owner(
            business_name=business_name,
            email=email,
            password=password,
            owner_name=owner_name,
        )
    except DomainError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created business: {business.name} (ID: {business.id})")
    click.echo(f"PASS Owner: {user.email} (ID: {user.id})")


@click.group('jobs')
def jobs_group():
    """Periodic maintenance jobs (run from cron)."""


@jobs_group.command('process-billing')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def process_billing(business_id):
    """Charge due subscriptions."""
    summary = subscription_service.process_due_subscriptions(business_id=business_id)
    click.echo(f"PASS Billed {summary['billed']} subscription(s), {summary['failed']} failed")


@jobs_group.command('expire-charges')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def expire_charges(business_id):
    """Expire overdue PIX charges and issue subscription retries."""
    summary = subscription_service.handle_expired_charges(business_id=business_id)
    click.echo(f"PASS Expired {summary['expired']} charge(s), issued {summary['retries']} retry charge(s)")


@jobs_group.command('payment-reminders')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def payment_reminders(business_id):
    """Remind customers about pending PIX charges."""
    reminded = pix_service.send_payment_reminders(business_id=business_id)
    click.echo(f"PASS Sent {len(reminded)} payment reminder(s)")


@jobs_group.command('proposal-follow-ups')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def proposal_follow_ups(business_id):
    """Follow up on proposals left unanswered."""
    followed = proposal_service.send_follow_ups(business_id=business_id)
    click.echo(f"PASS Sent {len(followed)} proposal follow-up(s)")


@jobs_group.command('expire-proposals')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def expire_proposals(business_id):
    """Expire proposals past their validity date."""
    expired = proposal_service.expire_stale_proposals(business_id=business_id)
    click.echo(f"PASS Expired {len(expired)} proposal(s)")


@jobs_group.command('low-stock')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def low_stock(business_id):
    """List items at or below their minimum stock."""
    q = db.session.query(Business).filter(Business.is_active.is_(True))
    if business_id is not None:
        q = q.filter(Business.id == business_id)

    total = 0
    for business in q.order_by(Business.id.asc()).all():
        items = inventory_service.find_low_stock_items(business.id)
        for item in items:
            click.echo(
                f"WARN  [{business.name}] {item.name}: {item.current_stock} {item.unit} "
                f"(minimum {item.minimum_stock})"
            )
        total += len(items)
    click.echo(f"PASS {total} low-stock item(s)")


@jobs_group.command('inactive-customers')
@click.option('--days', type=int, default=None, help='Inactivity window (default INACTIVE_CUSTOMER_DAYS)')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def inactive_customers(days, business_id):
    """Create reactivation tasks for inactive customers."""
    created = task_service.generate_inactive_customer_tasks(inactive_days=days, business_id=business_id)
    click.echo(f"PASS Created {len(created)} reactivation task(s)")


@jobs_group.command('daily-report')
@click.option('--day', default=None, help='Day to close, YYYY-MM-DD (default today UTC)')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@with_appcontext
def daily_report(day, business_id):
    """Email the daily closing report to each business owner."""
    q = db.session.query(Business).filter(Business.is_active.is_(True))
    if business_id is not None:
        q = q.filter(Business.id == business_id)

    sent = 0
    for business in q.order_by(Business.id.asc()).all():
        try:
            report, result = finance_service.send_daily_report(business.id, day)
        except DomainError as e:
            raise click.ClickException(e.message)
        if result.success:
            sent += 1
            click.echo(f"PASS [{business.name}] balance {report['balance']}")
        else:
            click.echo(f"WARN  [{business.name}] not delivered: {result.error}")
    click.echo(f"PASS Sent {sent} daily report(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(jobs_group)
