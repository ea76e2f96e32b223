"""Apply Stripe "invoice paid" events to subscriptions, licenses and discounts."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    Account,
    AccountKind,
    License,
    LicenseStatus,
    Plan,
    PlanPeriod,
    Subscription,
    SubscriptionInvoice,
)
from services import discounts, stripe_billing
from services.audit import log_action
from services.billing_context import BillingContext
from services.errors import DuplicateEvent, NotFound
from services.licenses import exhaustive, owned_license
from utils import first_of_month_after, utc_now

logger = logging.getLogger(__name__)

# A referrer earns this fraction of the referred account's plan price.
REFERRAL_REWARD_DIVISOR = 2

PAID_EVENT_TYPES = {"invoice.payment_succeeded", "invoice.paid"}

_PERIOD_MONTHS = {PlanPeriod.MONTHLY: 1, PlanPeriod.YEARLY: 12}


@dataclass
class WebhookResult:
    event_type: str
    status: str  # "processed" | "duplicate" | "ignored" | "not_found"
    subscription_id: Optional[int] = None


def handle_webhook(payload: str, signature: str) -> WebhookResult:
    """Verify and dispatch one Stripe webhook delivery.

    Raises:
        InvalidEventSignature: The payload is not signed by Stripe.
        Exception: Anything raised while reconciling; nothing is committed
            and the caller must not acknowledge the event.
    """
    event = stripe_billing.verify_and_parse_event(payload, signature)
    event_type = event["type"]
    if event_type not in PAID_EVENT_TYPES:
        logger.info("Unhandled Stripe event type %s", event_type)
        return WebhookResult(event_type, "ignored")

    invoice = event["data"]["object"]
    try:
        subscription_id = reconcile_paid_invoice(invoice)
    except DuplicateEvent as e:
        logger.info("Stripe event %s: %s", event.get("id"), e)
        return WebhookResult(event_type, "duplicate")
    except NotFound as e:
        logger.warning("Stripe event %s ignored: %s", event.get("id"), e)
        return WebhookResult(event_type, "not_found")
    return WebhookResult(event_type, "processed", subscription_id)


def next_billing_date(period: PlanPeriod, now: datetime.datetime) -> datetime.datetime:
    """First day of the month one billing period after *now*."""
    return first_of_month_after(now, _PERIOD_MONTHS[period])


def reconcile_paid_invoice(invoice, now: Optional[datetime.datetime] = None) -> int:
    """Apply a confirmed payment; return the subscription ID.

    Everything below either commits together or is rolled back. Re-delivery
    of an invoice already in the subscription's history is a no-op.

    Raises:
        NotFound: Metadata unparseable, or the subscription is gone.
        DuplicateEvent: The invoice was reconciled before.
    """
    now = now or utc_now()
    invoice_id = invoice["id"]
    context = BillingContext.from_metadata(invoice.get("metadata"))

    subscription = db.session.get(Subscription, context.subscription_id)
    if subscription is None:
        raise NotFound(f"subscription {context.subscription_id} not found for invoice {invoice_id}")
    if SubscriptionInvoice.query.filter_by(stripe_invoice_id=invoice_id).first() is not None:
        raise DuplicateEvent(f"invoice {invoice_id} already reconciled")

    plan = subscription.plan
    account = subscription.account
    try:
        if context.referral_code is not None:
            _reward_referrer(context.referral_code, account, plan)

        _ENTITLEMENT_HANDLERS[account.kind](subscription, account, plan, context.quantity)

        if context.coupon_id:
            consumed = discounts.mark_consumed(context.coupon_id)
            logger.info("Coupon %s consumed %s discounts", context.coupon_id, consumed)

        subscription.is_active = True
        subscription.is_in_trial = False
        subscription.next_billing_date = next_billing_date(plan.period, now)
        subscription.invoices.append(SubscriptionInvoice(
            stripe_invoice_id=invoice_id,
            amount_paid=invoice.get("amount_paid") or 0,
            paid_at=now,
        ))
        log_action(
            "payment_reconciled", "subscription", subscription.id,
            f"{invoice_id}: {context.quantity} seats, next billing {subscription.next_billing_date:%Y-%m-%d}",
            account_id=account.id,
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        # A concurrent delivery of the same invoice committed first.
        raise DuplicateEvent(f"invoice {invoice_id} reconciled concurrently") from None
    except Exception:
        db.session.rollback()
        logger.exception("Reconciling invoice %s failed; leaving the event unacknowledged", invoice_id)
        raise

    logger.info("License updated for account %s from invoice %s", account.id, invoice_id)
    return subscription.id


# ---------------------------------------------------------------------------
# Referral reward
# ---------------------------------------------------------------------------

def _reward_referrer(referral_code: int, payer: Account, plan: Plan) -> None:
    referrer = Account.query.filter_by(referral_code=referral_code).first()
    if referrer is None:
        logger.warning("Referral code %s matches no account", referral_code)
        return
    if referrer.id == payer.id:
        logger.warning("Account %s tried to refer itself", payer.id)
        return
    reward = plan.price // REFERRAL_REWARD_DIVISOR
    if reward > 0:
        discounts.grant_credit(referrer, reward, f"referral reward for account {payer.id}")
    payer.invited_referral_code = None


# ---------------------------------------------------------------------------
# Entitlement update per account kind
# ---------------------------------------------------------------------------

def _update_private(subscription: Subscription, account: Account, plan: Plan, quantity: int) -> None:
    lic = owned_license(account.id)
    if lic is None:
        lic = _create_license(account, plan, quantity)
    lic.seat_limit = quantity
    lic.tier = plan.tier
    lic.status = LicenseStatus.ACTIVE


def _update_business(subscription: Subscription, account: Account, plan: Plan, quantity: int) -> None:
    if subscription.license is None:
        subscription.license = _create_license(account, plan, quantity)
        return
    # Seats of an existing business license follow its own assignment flow.
    subscription.license.status = LicenseStatus.ACTIVE


def _create_license(account: Account, plan: Plan, quantity: int) -> License:
    lic = License(
        owner_id=account.id,
        status=LicenseStatus.ACTIVE,
        seat_limit=quantity,
        tier=plan.tier,
    )
    db.session.add(lic)
    db.session.flush()
    log_action("license_created", "license", lic.id, f"{quantity} seats, {plan.tier.value}",
               account_id=account.id)
    return lic


_ENTITLEMENT_HANDLERS: dict[AccountKind, Callable[[Subscription, Account, Plan, int], None]] = exhaustive(
    {
        AccountKind.PRIVATE: _update_private,
        AccountKind.BUSINESS: _update_business,
    },
    "entitlement update",
)
