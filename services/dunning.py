"""Grace-window expiry: deactivate subscriptions whose invoice was never paid."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app

from extensions import db
from mailer import MailerError, send_deactivation_warning
from models import AttemptStatus, BillingAttempt, License, LicenseStatus, Subscription
from services import stripe_billing
from services.audit import log_action
from services.billing import release_attempt_discount
from services.errors import ExternalCallFailure
from services.licenses import resolve_license

logger = logging.getLogger(__name__)


@dataclass
class DunningReport:
    deactivated: int = 0
    licenses_deactivated: int = 0
    notified: int = 0
    notification_failures: int = 0


def select_unpaid_subscriptions() -> list[Subscription]:
    """Subscriptions still in their grace window, i.e. billed but not confirmed paid."""
    return (
        Subscription.query.filter(Subscription.is_in_trial.is_(True))
        .order_by(Subscription.id)
        .all()
    )


def sweep_unpaid_subscriptions() -> DunningReport:
    """Deactivate every subscription still in its grace window.

    There is no partial extension: a subscription either had its payment
    confirmed (the reconciler cleared ``is_in_trial``) or it loses active
    status together with its license. Each deactivation is conditional on the
    subscription still being in its grace window, so a payment reconciled
    after the selection keeps the subscription and its license active.
    Notifications go out afterwards; a failed lookup or email is logged and
    does not stop the sweep.
    """
    report = DunningReport()
    candidates = select_unpaid_subscriptions()
    if not candidates:
        logger.info("No unpaid subscriptions to deactivate")
        return report

    deactivated = []
    for sub in candidates:
        updated = Subscription.query.filter(
            Subscription.id == sub.id,
            Subscription.is_in_trial.is_(True),
        ).update(
            {Subscription.is_in_trial: False, Subscription.is_active: False},
            synchronize_session=False,
        )
        if updated:
            deactivated.append(sub)
        else:
            logger.info("Subscription %s was paid before the sweep reached it", sub.id)

    license_ids = sorted({lic.id for lic in map(resolve_license, deactivated) if lic is not None})
    if license_ids:
        License.query.filter(License.id.in_(license_ids)).update(
            {License.status: LicenseStatus.INACTIVE}, synchronize_session=False
        )
    stranded = BillingAttempt.query.filter(
        BillingAttempt.subscription_id.in_([sub.id for sub in deactivated]),
        BillingAttempt.status == AttemptStatus.FAILED,
        BillingAttempt.discount_id.isnot(None),
    ).all()
    for attempt in stranded:
        release_attempt_discount(attempt)
    recipients = [(sub.id, sub.account.email, sub.account.stripe_customer_id) for sub in deactivated]
    for sub in deactivated:
        log_action(
            "subscription_deactivated", "subscription", sub.id,
            "grace window expired without confirmed payment", account_id=sub.account_id,
        )
    db.session.commit()
    report.deactivated = len(deactivated)
    report.licenses_deactivated = len(license_ids)
    logger.info(
        "Deactivated %s subscriptions and %s licenses", report.deactivated, report.licenses_deactivated
    )

    email_cfg = current_app.config["EMAIL_CONFIG"]
    for subscription_id, email, customer_id in recipients:
        if not customer_id:
            logger.info("Subscription %s has no Stripe customer, no invoice to link", subscription_id)
            continue
        try:
            invoices = stripe_billing.fetch_recent_invoices(customer_id, limit=1)
        except ExternalCallFailure as e:
            logger.error("Could not fetch invoices for subscription %s: %s", subscription_id, e)
            report.notification_failures += 1
            continue
        if not invoices:
            continue
        try:
            if send_deactivation_warning(email_cfg, email, invoices[0].hosted_invoice_url):
                report.notified += 1
        except MailerError as e:
            logger.error("Deactivation warning for subscription %s failed: %s", subscription_id, e)
            report.notification_failures += 1

    return report
