"""Monthly invoice generation for due subscriptions."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import AttemptStatus, BillingAttempt, Discount, Subscription
from services import discounts, stripe_billing
from services.audit import log_action
from services.billing_context import BillingContext
from services.catalog import ensure_customer
from services.errors import BillingError, NotFound
from services.invoicing import create_and_collect
from services.licenses import resolve_license
from utils import day_bounds, format_cents, utc_today

logger = logging.getLogger(__name__)


@dataclass
class BillingRunReport:
    cycle_date: datetime.date
    due: int = 0
    invoiced: int = 0
    skipped: int = 0
    failed: int = 0


def select_due_subscriptions(day: datetime.date) -> list[Subscription]:
    """Active subscriptions whose next billing date falls on *day*."""
    start, end = day_bounds(day)
    return (
        Subscription.query.filter(
            Subscription.is_active.is_(True),
            Subscription.next_billing_date >= start,
            Subscription.next_billing_date < end,
        )
        .order_by(Subscription.id)
        .all()
    )


def generate_monthly_invoices(today: Optional[datetime.date] = None) -> BillingRunReport:
    """Invoice every subscription due *today*.

    The whole due set enters the grace window (``is_in_trial``) before any
    Stripe call. Each subscription is then billed on its own: a failure is
    logged, recorded on its :class:`BillingAttempt` and the loop moves on.
    """
    today = today or utc_today()
    report = BillingRunReport(cycle_date=today)
    due_ids = [sub.id for sub in select_due_subscriptions(today)]
    report.due = len(due_ids)
    logger.info("Invoice generation for %s: %s subscriptions due", today, report.due)
    if not due_ids:
        return report

    Subscription.query.filter(Subscription.id.in_(due_ids)).update(
        {Subscription.is_in_trial: True}, synchronize_session=False
    )
    db.session.commit()

    for subscription_id in due_ids:
        _process_subscription(subscription_id, today, report)

    logger.info(
        "Invoice generation for %s done: %s invoiced, %s skipped, %s failed",
        today, report.invoiced, report.skipped, report.failed,
    )
    return report


def retry_failed_invoices(today: Optional[datetime.date] = None) -> BillingRunReport:
    """Retry this month's failed attempts while the grace window is still open.

    Bounded by ``max_invoice_attempts`` and by the dunning day: after that the
    sweeper owns every subscription still awaiting payment.
    """
    today = today or utc_today()
    cfg = current_app.config["BILLING_CONFIG"]
    report = BillingRunReport(cycle_date=today)
    if today.day >= cfg.dunning_day:
        logger.info("Retry window closed on %s (dunning day %s)", today, cfg.dunning_day)
        return report

    attempts = (
        BillingAttempt.query.join(Subscription)
        .filter(
            BillingAttempt.status == AttemptStatus.FAILED,
            BillingAttempt.attempts < cfg.max_invoice_attempts,
            BillingAttempt.cycle_date >= today.replace(day=1),
            BillingAttempt.cycle_date <= today,
            Subscription.is_active.is_(True),
            Subscription.is_in_trial.is_(True),
        )
        .order_by(BillingAttempt.id)
        .all()
    )
    report.due = len(attempts)
    for subscription_id, cycle_date in [(a.subscription_id, a.cycle_date) for a in attempts]:
        _process_subscription(subscription_id, cycle_date, report, retry=True)
    logger.info(
        "Retried %s failed invoices: %s invoiced, %s failed", report.due, report.invoiced, report.failed
    )
    return report


# ---------------------------------------------------------------------------
# Per-subscription processing
# ---------------------------------------------------------------------------

def _open_attempt(
    subscription_id: int, cycle_date: datetime.date, retry: bool
) -> Optional[BillingAttempt]:
    attempt = BillingAttempt.query.filter_by(
        subscription_id=subscription_id, cycle_date=cycle_date
    ).first()
    if attempt is not None and not retry:
        logger.info(
            "Subscription %s already handled for %s (%s)",
            subscription_id, cycle_date, attempt.status.value,
        )
        return None
    if attempt is None:
        attempt = BillingAttempt(subscription_id=subscription_id, cycle_date=cycle_date)
        db.session.add(attempt)
    attempt.attempts = (attempt.attempts or 0) + 1
    attempt.status = AttemptStatus.PENDING
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info("Subscription %s picked up by another run for %s", subscription_id, cycle_date)
        return None
    return attempt


def _process_subscription(
    subscription_id: int,
    cycle_date: datetime.date,
    report: BillingRunReport,
    retry: bool = False,
) -> None:
    attempt = _open_attempt(subscription_id, cycle_date, retry)
    if attempt is None:
        return
    attempt_id = attempt.id

    try:
        invoice = bill_subscription(subscription_id, attempt)
    except NotFound as e:
        db.session.rollback()
        logger.warning("Skipping subscription %s: %s", subscription_id, e)
        _finish_attempt(attempt_id, AttemptStatus.SKIPPED, error=str(e))
        report.skipped += 1
        return
    except Exception as e:
        db.session.rollback()
        logger.exception("Invoicing subscription %s failed", subscription_id)
        _finish_attempt(attempt_id, AttemptStatus.FAILED, error=str(e))
        report.failed += 1
        return

    if invoice is None:
        _finish_attempt(attempt_id, AttemptStatus.SKIPPED, error="no assigned seats")
        report.skipped += 1
        return
    _finish_attempt(attempt_id, AttemptStatus.INVOICED, stripe_invoice_id=invoice.id)
    report.invoiced += 1


def _finish_attempt(attempt_id: int, status: AttemptStatus, **fields) -> None:
    attempt = db.session.get(BillingAttempt, attempt_id)
    attempt.status = status
    attempt.error = fields.get("error")
    if fields.get("stripe_invoice_id"):
        attempt.stripe_invoice_id = fields["stripe_invoice_id"]
    max_attempts = current_app.config["BILLING_CONFIG"].max_invoice_attempts
    if status == AttemptStatus.FAILED and attempt.discount_id and attempt.attempts >= max_attempts:
        release_attempt_discount(attempt)
    db.session.commit()


def release_attempt_discount(attempt: BillingAttempt) -> None:
    """Unbind the coupon of an attempt that will never produce an invoice. Does NOT commit."""
    if discounts.unbind_coupon(attempt.discount_id):
        logger.info(
            "Discount %s of subscription %s returned to the unspent pool",
            attempt.discount_id, attempt.subscription_id,
        )
    attempt.discount_id = None


def _pending_coupon(attempt: BillingAttempt) -> Optional[Discount]:
    """Discount an earlier try of this attempt already bound to a coupon."""
    if not attempt.discount_id:
        return None
    discount = db.session.get(Discount, attempt.discount_id)
    if discount is None or discount.used or not discount.stripe_coupon_id:
        return None
    return discount


def bill_subscription(subscription_id: int, attempt: BillingAttempt):
    """Invoice one subscription for the attempt's cycle.

    Returns the Stripe invoice, or None when the license has no assigned
    seats (nothing to bill).

    Raises:
        NotFound: Subscription or its license is missing.
        ExternalCallFailure: A Stripe call failed.
    """
    subscription = db.session.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFound(f"subscription {subscription_id} not found")
    seat_license = resolve_license(subscription)
    if seat_license is None:
        raise NotFound(f"subscription {subscription_id} has no license")

    seats = seat_license.active_seat_count
    if seats == 0:
        logger.info("Subscription %s has no assigned seats, nothing to bill", subscription_id)
        return None

    plan = subscription.plan
    account = subscription.account
    if not plan.stripe_price_id:
        raise BillingError(f"plan {plan.id} has no Stripe price; run `flask billing sync-catalog`")
    customer_id = ensure_customer(account)

    cycle = attempt.cycle_date.isoformat()
    charge = seats * plan.price
    coupon_id: Optional[str] = None
    discount_amount: Optional[int] = None

    discount = _pending_coupon(attempt)
    if discount is not None and discount.remaining > charge:
        # Seats dropped since the coupon was bound; re-split the credit for the new charge.
        release_attempt_discount(attempt)
        db.session.commit()
        discount = None
    if discount is not None:
        coupon_id, discount_amount = discount.stripe_coupon_id, discount.remaining
    elif charge > 0:
        discount = discounts.find_unspent(account.id)
        if discount is not None:
            split = discounts.apply_to_amount(discount, charge, split_key=f"{subscription.id}:{cycle}")
            coupon_id = stripe_billing.create_coupon(
                split.applied,
                idempotency_key=f"coupon-{subscription.id}-{cycle}-{discount.id}-{split.applied}",
            )
            discounts.bind_coupon(discount, coupon_id)
            discount_amount = split.applied
            attempt.discount_id = discount.id
            db.session.commit()

    context = BillingContext(
        subscription_id=subscription.id,
        quantity=seats,
        coupon_id=coupon_id,
        discount_amount=discount_amount,
    )
    currency = current_app.config["STRIPE_CONFIG"].currency
    description = f"Plan - {plan.tier.value} - {plan.period.value}. Quantity - {seats}."
    if discount_amount:
        description += f" Discount: {format_cents(discount_amount, currency)}."

    invoice = create_and_collect(
        customer_id,
        plan.stripe_price_id,
        seats,
        description,
        context.to_metadata(),
        coupon_id=coupon_id,
        collect_now=True,
        idempotency_key=f"invoice-{subscription.id}-{cycle}-{attempt.attempts}",
    )
    log_action(
        "invoice_created", "subscription", subscription.id,
        f"{invoice.id}: {seats} seats, charge {charge}, discount {discount_amount or 0}",
        account_id=account.id,
    )
    db.session.commit()
    return invoice
