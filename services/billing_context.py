"""Billing context carried across the asynchronous Stripe boundary.

The scheduler writes it into the invoice ``metadata`` and the reconciler reads
it back when the ``invoice.payment_succeeded`` event arrives. Stripe metadata
values are strings, so every field is serialized as text and parsed strictly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from services.errors import InvalidBillingContext

# Keys kept compatible with invoices issued before the context was typed.
SUBSCRIPTION_KEY = "subscriptionId"
QUANTITY_KEY = "quantity"
COUPON_KEY = "stripeCouponId"
DISCOUNT_KEY = "discountAmount"
REFERRAL_KEY = "userReferralCode"


@dataclass(frozen=True)
class BillingContext:
    subscription_id: int
    quantity: int
    coupon_id: Optional[str] = None
    discount_amount: Optional[int] = None
    referral_code: Optional[int] = None

    def to_metadata(self) -> dict[str, str]:
        metadata = {
            SUBSCRIPTION_KEY: str(self.subscription_id),
            QUANTITY_KEY: str(self.quantity),
        }
        if self.coupon_id:
            metadata[COUPON_KEY] = self.coupon_id
        if self.discount_amount is not None:
            metadata[DISCOUNT_KEY] = str(self.discount_amount)
        if self.referral_code is not None:
            metadata[REFERRAL_KEY] = str(self.referral_code)
        return metadata

    @classmethod
    def from_metadata(cls, metadata) -> "BillingContext":
        """Parse invoice metadata; raise :class:`InvalidBillingContext` on anything off."""
        if not metadata:
            raise InvalidBillingContext("invoice carries no billing metadata")
        data = dict(metadata)

        subscription_id = _parse_int(data, SUBSCRIPTION_KEY, required=True, minimum=1)
        quantity = _parse_int(data, QUANTITY_KEY, required=True, minimum=1)
        discount_amount = _parse_int(data, DISCOUNT_KEY, required=False, minimum=0)
        referral_code = _parse_int(data, REFERRAL_KEY, required=False, minimum=0)

        coupon_id = data.get(COUPON_KEY) or None
        if coupon_id is not None and not isinstance(coupon_id, str):
            raise InvalidBillingContext(f"{COUPON_KEY} must be a string")
        if discount_amount is not None and coupon_id is None:
            raise InvalidBillingContext(f"{DISCOUNT_KEY} given without {COUPON_KEY}")

        return cls(
            subscription_id=subscription_id,
            quantity=quantity,
            coupon_id=coupon_id,
            discount_amount=discount_amount,
            referral_code=referral_code,
        )


def _parse_int(data: dict, key: str, *, required: bool, minimum: int) -> Optional[int]:
    raw = data.get(key)
    if raw is None or raw == "":
        if required:
            raise InvalidBillingContext(f"missing {key}")
        return None
    if isinstance(raw, bool):
        raise InvalidBillingContext(f"{key} is not an integer: {raw!r}")
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise InvalidBillingContext(f"{key} is not an integer: {raw!r}") from None
    if value < minimum:
        raise InvalidBillingContext(f"{key} must be >= {minimum}, got {value}")
    return value
