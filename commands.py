"""Flask CLI commands for the scheduled billing jobs.

Meant to be fired by the host's cron, e.g.::

    0 8 1 * *    flask --app app billing generate-invoices
    0 8 2-5 * *  flask --app app billing retry-failed
    0 8 6 * *    flask --app app billing sweep-unpaid
"""

from __future__ import annotations

import sys
from typing import Optional

import click
from flask.cli import AppGroup

from services.errors import BillingError, JobAlreadyRunning
from services.job_lock import job_lock
from utils import parse_date, utc_today

billing_cli = AppGroup("billing", help="Subscription billing jobs.")


def _cycle_date(raw: Optional[str]):
    if not raw:
        return utc_today()
    day = parse_date(raw)
    if day is None:
        raise click.BadParameter(f"expected YYYY-MM-DD, got {raw!r}", param_hint="--date")
    return day


@billing_cli.command("generate-invoices")
@click.option("--date", "date_", help="Billing day (YYYY-MM-DD), defaults to today (UTC)")
def generate_invoices(date_: Optional[str]):
    """Invoice every active subscription due today."""
    from services.billing import generate_monthly_invoices

    day = _cycle_date(date_)
    try:
        with job_lock("generate_invoices", day.isoformat()):
            report = generate_monthly_invoices(day)
    except JobAlreadyRunning as e:
        click.echo(f"Skipped: {e}")
        return
    click.echo(
        f"{day}: {report.due} due, {report.invoiced} invoiced, "
        f"{report.skipped} skipped, {report.failed} failed"
    )
    if report.failed:
        sys.exit(1)


@billing_cli.command("retry-failed")
@click.option("--date", "date_", help="Day of the retry run (YYYY-MM-DD), defaults to today (UTC)")
def retry_failed(date_: Optional[str]):
    """Retry invoices that failed earlier this cycle, before dunning."""
    from services.billing import retry_failed_invoices

    day = _cycle_date(date_)
    try:
        with job_lock("retry_failed", day.isoformat()):
            report = retry_failed_invoices(day)
    except JobAlreadyRunning as e:
        click.echo(f"Skipped: {e}")
        return
    click.echo(f"{day}: {report.due} retried, {report.invoiced} invoiced, {report.failed} failed")
    if report.failed:
        sys.exit(1)


@billing_cli.command("sweep-unpaid")
def sweep_unpaid():
    """Deactivate subscriptions whose grace window expired unpaid."""
    from services.dunning import sweep_unpaid_subscriptions

    day = utc_today()
    try:
        with job_lock("sweep_unpaid", day.isoformat()):
            report = sweep_unpaid_subscriptions()
    except JobAlreadyRunning as e:
        click.echo(f"Skipped: {e}")
        return
    click.echo(
        f"{day}: {report.deactivated} subscriptions and {report.licenses_deactivated} "
        f"licenses deactivated, {report.notified} notified, "
        f"{report.notification_failures} notification failures"
    )


@billing_cli.command("sync-catalog")
def sync_catalog():
    """Create Stripe products and prices for plans that lack them."""
    from services.catalog import sync_plan_prices

    try:
        plans = sync_plan_prices()
    except BillingError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if not plans:
        click.echo("All active plans already have a Stripe price.")
        return
    for plan in plans:
        click.echo(f"  {plan.name}: {plan.stripe_price_id}")
