"""Discount ledger: per-account credit, split across charges, consumed on payment."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import Account, Discount
from services.audit import log_action
from services.errors import DiscountConflict

logger = logging.getLogger(__name__)


@dataclass
class DiscountSplit:
    applied: int
    remainder: int
    remainder_discount: Optional[Discount] = None


def find_unspent(account_id: int) -> Optional[Discount]:
    """Return the account's oldest unconsumed discount not yet bound to a coupon."""
    return (
        Discount.query.filter(
            Discount.account_id == account_id,
            Discount.used.is_(False),
            Discount.stripe_coupon_id.is_(None),
            Discount.remaining > 0,
        )
        .order_by(Discount.id)
        .first()
    )


def apply_to_amount(discount: Discount, charge_amount: int, split_key: str) -> DiscountSplit:
    """Split *discount* against *charge_amount* and commit the result.

    When the discount covers at most the charge, all of it applies. Otherwise
    the original is reduced to the charge and the rest becomes a new unspent
    discount tagged with *split_key*. Both writes share one commit; a second
    split under the same key loses on the unique ``split_key`` and reuses the
    first split, splitting again under a derived key if the charge has
    shrunk since. The applied amount never exceeds *charge_amount*.
    """
    if charge_amount < 0:
        raise ValueError("charge_amount must be non-negative")
    original = discount.remaining
    if original <= charge_amount:
        return DiscountSplit(applied=original, remainder=0)

    remainder = original - charge_amount
    rest = Discount(account_id=discount.account_id, remaining=remainder, split_key=split_key)
    discount.remaining = charge_amount
    db.session.add(rest)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        db.session.refresh(discount)
        if discount.remaining > charge_amount:
            logger.info(
                "Discount split %s already recorded for a larger charge; splitting %s again",
                split_key, discount.id,
            )
            return apply_to_amount(discount, charge_amount, f"{split_key}/{charge_amount}")
        existing = Discount.query.filter_by(split_key=split_key).first()
        logger.info("Discount split %s already recorded; reusing it", split_key)
        return DiscountSplit(
            applied=discount.remaining,
            remainder=existing.remaining if existing else 0,
            remainder_discount=existing,
        )

    logger.info(
        "Split discount %s: %s applied now, %s carried over as discount %s",
        discount.id, charge_amount, remainder, rest.id,
    )
    return DiscountSplit(applied=charge_amount, remainder=remainder, remainder_discount=rest)


def bind_coupon(discount: Discount, coupon_id: str) -> None:
    """Attach *coupon_id* to *discount* only if it is still unbound and unused."""
    updated = Discount.query.filter(
        Discount.id == discount.id,
        Discount.stripe_coupon_id.is_(None),
        Discount.used.is_(False),
    ).update({Discount.stripe_coupon_id: coupon_id}, synchronize_session=False)
    db.session.commit()
    if updated != 1:
        raise DiscountConflict(f"discount {discount.id} was bound or consumed concurrently")
    db.session.refresh(discount)


def mark_consumed(coupon_id: str) -> int:
    """Flag every discount bound to *coupon_id* as used.

    Lowers the owners' displayed balance by the consumed amounts. Does NOT
    commit; runs inside the reconciler's transaction.
    """
    discounts = Discount.query.filter(
        Discount.stripe_coupon_id == coupon_id,
        Discount.used.is_(False),
    ).all()
    for discount in discounts:
        discount.used = True
        account = db.session.get(Account, discount.account_id)
        account.discount_balance = max(0, (account.discount_balance or 0) - discount.remaining)
    return len(discounts)


def grant_credit(account: Account, amount: int, reason: str) -> Discount:
    """Add *amount* of unspent credit to *account*. Does NOT commit."""
    if amount <= 0:
        raise ValueError("credit amount must be positive")
    credit = Discount(account_id=account.id, remaining=amount)
    db.session.add(credit)
    account.discount_balance = (account.discount_balance or 0) + amount
    db.session.flush()
    log_action("grant_credit", "discount", credit.id, reason, account_id=account.id)
    logger.info("Granted %s credit to account %s (%s)", amount, account.id, reason)
    return credit


def unbind_coupon(discount_id: int) -> bool:
    """Return a discount whose coupon never reached an issued invoice to the unspent pool.

    Does NOT commit. False if the discount was consumed or already unbound.
    """
    updated = Discount.query.filter(
        Discount.id == discount_id,
        Discount.used.is_(False),
        Discount.stripe_coupon_id.isnot(None),
    ).update({Discount.stripe_coupon_id: None}, synchronize_session=False)
    return updated == 1
