"""SQLAlchemy models for accounts, plans, subscriptions, licenses and discounts."""

from __future__ import annotations

import enum

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AccountKind(str, enum.Enum):
    PRIVATE = "private"
    BUSINESS = "business"


class PlanPeriod(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class LicenseTier(str, enum.Enum):
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class LicenseStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AttemptStatus(str, enum.Enum):
    PENDING = "pending"
    INVOICED = "invoiced"
    SKIPPED = "skipped"
    FAILED = "failed"


def _enum(enum_cls):
    """String column holding the enum *value* (not its name)."""
    return db.Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------

class Account(db.Model):
    """A paying customer, private person or business."""
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), nullable=False)
    name = db.Column(db.String(120))
    kind = db.Column(_enum(AccountKind), nullable=False, default=AccountKind.PRIVATE)
    stripe_customer_id = db.Column(db.String(120), unique=True)
    discount_balance = db.Column(db.Integer, nullable=False, default=0)  # cents, display only
    referral_code = db.Column(db.Integer, unique=True)
    invited_referral_code = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscriptions = db.relationship("Subscription", back_populates="account")
    discounts = db.relationship("Discount", back_populates="account")


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------

class Plan(db.Model):
    """Immutable catalog entry; ``price`` is per seat, in cents."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    price = db.Column(db.Integer, nullable=False)
    period = db.Column(_enum(PlanPeriod), nullable=False, default=PlanPeriod.MONTHLY)
    tier = db.Column(_enum(LicenseTier), nullable=False, default=LicenseTier.STANDARD)
    stripe_product_id = db.Column(db.String(120))
    stripe_price_id = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_plan_price_non_negative"),
    )


# ---------------------------------------------------------------------------
# Licenses
# ---------------------------------------------------------------------------

class License(db.Model):
    """Entitlement: seat limit and tier. Never deleted by the billing engine."""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    status = db.Column(_enum(LicenseStatus), nullable=False, default=LicenseStatus.ACTIVE)
    seat_limit = db.Column(db.Integer, nullable=False, default=1)
    tier = db.Column(_enum(LicenseTier), nullable=False, default=LicenseTier.STANDARD)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    owner = db.relationship("Account")
    seats = db.relationship("LicenseSeat", backref="license", cascade="all, delete-orphan")

    @property
    def active_seat_count(self) -> int:
        """Number of seats currently assigned (what the monthly invoice bills)."""
        return LicenseSeat.query.filter_by(license_id=self.id).count()


class LicenseSeat(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    license_id = db.Column(db.Integer, db.ForeignKey("license.id"), nullable=False, index=True)
    member_email = db.Column(db.String(120), nullable=False)
    assigned_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("license_id", "member_email", name="uq_license_seat_member"),
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """An account's recurring purchase of a plan.

    ``is_in_trial`` means "billed, awaiting confirmed payment" (grace window).
    ``next_billing_date`` only moves when a payment is confirmed.
    """
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("plan.id"), nullable=False)
    license_id = db.Column(db.Integer, db.ForeignKey("license.id"))
    next_billing_date = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_in_trial = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    account = db.relationship("Account", back_populates="subscriptions")
    plan = db.relationship("Plan")
    license = db.relationship("License")
    invoices = db.relationship(
        "SubscriptionInvoice",
        backref="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionInvoice.id",
    )

    __table_args__ = (
        db.Index("ix_subscription_due", "is_active", "next_billing_date"),
        db.Index("ix_subscription_in_trial", "is_in_trial"),
    )

    @property
    def stripe_invoice_ids(self) -> list[str]:
        return [row.stripe_invoice_id for row in self.invoices]


class SubscriptionInvoice(db.Model):
    """Payment history: one row per confirmed-paid Stripe invoice."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscription.id"), nullable=False, index=True
    )
    stripe_invoice_id = db.Column(db.String(120), nullable=False, unique=True)
    amount_paid = db.Column(db.Integer, default=0)
    paid_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Discount ledger
# ---------------------------------------------------------------------------

class Discount(db.Model):
    """Unconsumed credit of an account, in cents.

    Bound to a Stripe coupon when applied to an invoice; ``used`` only flips
    after that invoice is confirmed paid.
    """
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    remaining = db.Column(db.Integer, nullable=False)
    stripe_coupon_id = db.Column(db.String(120), index=True)
    used = db.Column(db.Boolean, nullable=False, default=False)
    split_key = db.Column(db.String(80), unique=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    account = db.relationship("Account", back_populates="discounts")

    __table_args__ = (
        db.CheckConstraint("remaining >= 0", name="ck_discount_remaining_non_negative"),
    )


# ---------------------------------------------------------------------------
# Billing bookkeeping
# ---------------------------------------------------------------------------

class BillingAttempt(db.Model):
    """One row per subscription per billing cycle; guards against double billing."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    cycle_date = db.Column(db.Date, nullable=False)
    status = db.Column(_enum(AttemptStatus), nullable=False, default=AttemptStatus.PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    stripe_invoice_id = db.Column(db.String(120))
    discount_id = db.Column(db.Integer, db.ForeignKey("discount.id"))
    error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscription = db.relationship("Subscription")

    __table_args__ = (
        db.UniqueConstraint("subscription_id", "cycle_date", name="uq_billing_attempt_cycle"),
        db.Index("ix_billing_attempt_status", "status"),
    )


class JobLock(db.Model):
    """Leased run-lock for a scheduled job, keyed by job name and cycle."""
    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(80), nullable=False)
    cycle_key = db.Column(db.String(40), nullable=False)
    holder = db.Column(db.String(120), nullable=False)
    acquired_at = db.Column(db.DateTime, default=utc_now)
    expires_at = db.Column(db.DateTime, nullable=False)
    released_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint("job_name", "cycle_key", name="uq_job_lock_cycle"),
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), index=True)
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
