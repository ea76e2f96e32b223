"""Keep local accounts and plans linked to their Stripe counterparts."""

from __future__ import annotations

import logging

from extensions import db
from models import Account, Plan
from services import stripe_billing

logger = logging.getLogger(__name__)


def ensure_customer(account: Account) -> str:
    """Return the account's Stripe customer ID, creating the customer if needed."""
    if account.stripe_customer_id:
        return account.stripe_customer_id
    customer_id = stripe_billing.create_customer(
        account.email, account.name or account.email, account.id
    )
    account.stripe_customer_id = customer_id
    db.session.commit()
    logger.info("Created Stripe customer %s for account %s", customer_id, account.id)
    return customer_id


def sync_plan_prices() -> list[Plan]:
    """Create Stripe products/prices for active plans that lack them.

    Returns the plans that were updated. Each plan is committed on its own so
    a Stripe failure halfway keeps the earlier links.
    """
    synced = []
    plans = Plan.query.filter(Plan.is_active.is_(True), Plan.stripe_price_id.is_(None)).all()
    for plan in plans:
        if not plan.stripe_product_id:
            plan.stripe_product_id = stripe_billing.create_product(
                plan.name, f"{plan.tier.value} license, billed {plan.period.value}"
            )
            db.session.commit()
        plan.stripe_price_id = stripe_billing.create_price(plan.stripe_product_id, plan.price)
        db.session.commit()
        logger.info("Linked plan %s to Stripe price %s", plan.id, plan.stripe_price_id)
        synced.append(plan)
    return synced
