"""Inbound Stripe webhook endpoint."""

import json
import logging

from flask import Blueprint, request

from extensions import limiter
from services.errors import InvalidEventSignature
from services.reconciler import handle_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/webhooks/stripe", methods=["POST"])
@limiter.limit("300 per minute")
def stripe_webhook():
    """Handle Stripe webhook events.

    2xx acknowledges the event. Anything else makes Stripe redeliver, which is
    what a failed reconciliation needs.
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        result = handle_webhook(payload, sig_header)
    except InvalidEventSignature:
        return json.dumps({"status": "error", "message": "invalid signature"}), 400
    except Exception:
        logger.exception("Stripe webhook processing failed")
        return json.dumps({"status": "error", "message": "processing failed"}), 500
    return json.dumps({"status": result.status, "event": result.event_type}), 200
