"""Starting a subscription: the account's first invoice."""

from __future__ import annotations

import logging

from extensions import db
from models import Account, Plan, Subscription
from services.billing_context import BillingContext
from services.catalog import ensure_customer
from services.errors import BillingError, NotFound
from services.invoicing import create_and_collect

logger = logging.getLogger(__name__)


def start_subscription(account_id: int, plan_id: int, quantity: int, collect_now: bool = True):
    """Create a subscription and issue its first invoice.

    The subscription starts in its grace window (``is_in_trial``) with no
    billing date; the reconciler activates the license and sets the date when
    the invoice is paid, and the sweeper deactivates it otherwise. The first
    invoice carries the referral code the account signed up with, so the
    referrer is rewarded on payment.

    Returns (subscription, stripe invoice).
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    account = db.session.get(Account, account_id)
    if account is None:
        raise NotFound(f"account {account_id} not found")
    plan = db.session.get(Plan, plan_id)
    if plan is None or not plan.is_active:
        raise NotFound(f"plan {plan_id} not found")
    if not plan.stripe_price_id:
        raise BillingError(f"plan {plan.id} has no Stripe price; run `flask billing sync-catalog`")

    customer_id = ensure_customer(account)
    subscription = Subscription(
        account_id=account.id,
        plan_id=plan.id,
        is_active=True,
        is_in_trial=True,
    )
    db.session.add(subscription)
    db.session.commit()

    context = BillingContext(
        subscription_id=subscription.id,
        quantity=quantity,
        referral_code=account.invited_referral_code,
    )
    invoice = create_and_collect(
        customer_id,
        plan.stripe_price_id,
        quantity,
        f"Plan - {plan.tier.value} - {plan.period.value}. Quantity - {quantity}.",
        context.to_metadata(),
        collect_now=collect_now,
        idempotency_key=f"invoice-{subscription.id}-initial",
    )
    logger.info("Started subscription %s for account %s (invoice %s)", subscription.id, account.id, invoice.id)
    return subscription, invoice
