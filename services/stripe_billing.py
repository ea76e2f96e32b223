"""Stripe payment integration service.

Thin wrappers: one SDK call each, no retries. Every Stripe error is turned
into :class:`ExternalCallFailure` so callers only deal with one exception type.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import stripe
from flask import current_app

from services.errors import ExternalCallFailure, InvalidEventSignature, PaymentDeclined

logger = logging.getLogger(__name__)


def _get_stripe():
    """Return the stripe module configured from ``STRIPE_CONFIG``."""
    cfg = current_app.config["STRIPE_CONFIG"]
    stripe.api_key = cfg.secret_key
    if cfg.api_version:
        stripe.api_version = cfg.api_version
    return stripe


def _currency() -> str:
    return current_app.config["STRIPE_CONFIG"].currency


def _call(operation: str, func, *args, **kwargs):
    client = _get_stripe()
    try:
        return func(client)(*args, **kwargs)
    except client.CardError as e:
        logger.warning("Stripe %s declined: %s", operation, e)
        raise PaymentDeclined(operation, str(e)) from e
    except client.StripeError as e:
        logger.error("Stripe %s failed: %s", operation, e)
        raise ExternalCallFailure(operation, str(e)) from e


# ---------------------------------------------------------------------------
# Catalog / customers
# ---------------------------------------------------------------------------

def create_customer(email: str, name: str, account_id: int) -> str:
    """Create a Stripe customer. Returns customer ID."""
    customer = _call(
        "create_customer", lambda s: s.Customer.create,
        email=email,
        name=name,
        metadata={"account_id": str(account_id)},
    )
    return customer.id


def create_product(name: str, description: str = "") -> str:
    product = _call(
        "create_product", lambda s: s.Product.create,
        name=name,
        description=description or None,
    )
    return product.id


def create_price(product_id: str, unit_amount: int) -> str:
    price = _call(
        "create_price", lambda s: s.Price.create,
        product=product_id,
        unit_amount=unit_amount,
        currency=_currency(),
    )
    return price.id


def create_coupon(amount_off: int, idempotency_key: Optional[str] = None) -> str:
    """Create a one-off fixed-amount coupon. Returns coupon ID."""
    coupon = _call(
        "create_coupon", lambda s: s.Coupon.create,
        amount_off=amount_off,
        currency=_currency(),
        duration="once",
        idempotency_key=idempotency_key,
    )
    return coupon.id


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def create_invoice(
    customer_id: str,
    metadata: dict,
    description: str = "",
    idempotency_key: Optional[str] = None,
):
    return _call(
        "create_invoice", lambda s: s.Invoice.create,
        customer=customer_id,
        description=description,
        metadata=metadata,
        currency=_currency(),
        collection_method="charge_automatically",
        auto_advance=False,
        idempotency_key=idempotency_key,
    )


def add_invoice_line_item(
    customer_id: str, invoice_id: str, price_id: str, quantity: int, description: str = ""
):
    return _call(
        "add_invoice_line_item", lambda s: s.InvoiceItem.create,
        customer=customer_id,
        invoice=invoice_id,
        price=price_id,
        quantity=quantity,
        description=description,
    )


def apply_invoice_discount(invoice_id: str, coupon_id: str):
    return _call(
        "apply_invoice_discount", lambda s: s.Invoice.modify,
        invoice_id,
        discounts=[{"coupon": coupon_id}],
    )


def finalize_invoice(invoice_id: str):
    return _call("finalize_invoice", lambda s: s.Invoice.finalize_invoice, invoice_id)


def pay_invoice(invoice_id: str):
    return _call("pay_invoice", lambda s: s.Invoice.pay, invoice_id)


def fetch_invoice(invoice_id: str):
    return _call("fetch_invoice", lambda s: s.Invoice.retrieve, invoice_id)


def fetch_recent_invoices(customer_id: str, limit: int = 1) -> list:
    """Return the customer's newest invoices, most recent first."""
    response = _call(
        "fetch_recent_invoices", lambda s: s.Invoice.list,
        customer=customer_id,
        limit=limit,
    )
    return list(response.data)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def verify_and_parse_event(payload: str, signature: str) -> dict:
    """Verify the Stripe-Signature header and return the event as a plain dict.

    Current SDK releases return an event object that is not a ``dict``; it is
    only used for verification and callers get the decoded payload.
    """
    client = _get_stripe()
    secret = current_app.config["STRIPE_CONFIG"].webhook_secret
    if not secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured")
        raise InvalidEventSignature("webhook secret not configured")
    try:
        client.Webhook.construct_event(payload, signature, secret)
    except (client.SignatureVerificationError, ValueError) as e:
        logger.error("Stripe webhook verification failed: %s", e)
        raise InvalidEventSignature(str(e)) from e
    return json.loads(payload)
