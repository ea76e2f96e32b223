"""Invoice orchestration: draft → line item → discount → finalize → pay."""

from __future__ import annotations

import logging
from typing import Optional

from services import stripe_billing
from services.errors import PaymentDeclined

logger = logging.getLogger(__name__)


def create_and_collect(
    customer_id: str,
    price_id: str,
    quantity: int,
    description: str,
    metadata: dict,
    coupon_id: Optional[str] = None,
    collect_now: bool = True,
    idempotency_key: Optional[str] = None,
):
    """Drive Stripe through one invoice and return the re-fetched invoice.

    Args:
        customer_id: Stripe customer to bill.
        price_id: Stripe price of one seat.
        quantity: Number of seats.
        description: Shown on the invoice and its line item.
        metadata: Billing context; the only way the reconciler can tell
            which subscription a paid invoice belongs to.
        coupon_id: Optional one-off coupon applied at invoice level.
        collect_now: Attempt to charge the default payment method right away.
        idempotency_key: Passed to the draft creation so a replayed call
            does not open a second invoice.

    Returns:
        The finalized Stripe invoice. Its payment outcome arrives later as a
        webhook event; a declined card leaves it open.

    Raises:
        ExternalCallFailure: If any Stripe step other than the charge fails.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    invoice = stripe_billing.create_invoice(
        customer_id, metadata, description=description, idempotency_key=idempotency_key
    )
    stripe_billing.add_invoice_line_item(customer_id, invoice.id, price_id, quantity, description)
    if coupon_id:
        stripe_billing.apply_invoice_discount(invoice.id, coupon_id)
    stripe_billing.finalize_invoice(invoice.id)

    if collect_now:
        try:
            stripe_billing.pay_invoice(invoice.id)
        except PaymentDeclined as e:
            logger.warning("Invoice %s left open, charge declined: %s", invoice.id, e)

    invoice = stripe_billing.fetch_invoice(invoice.id)
    logger.info(
        "Invoice %s for customer %s: %s x %s (status=%s)",
        invoice.id, customer_id, quantity, price_id, invoice.status,
    )
    return invoice
