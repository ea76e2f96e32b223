"""License lookup shared by the scheduler, the sweeper and the reconciler."""

from __future__ import annotations

from typing import Callable, Optional

from models import AccountKind, License, Subscription


def exhaustive(table: dict, what: str) -> dict:
    """Fail at import time if *table* does not handle every account kind."""
    missing = set(AccountKind) - set(table)
    if missing:
        raise RuntimeError(f"{what} lacks handlers for {sorted(k.value for k in missing)}")
    return table


def owned_license(account_id: int) -> Optional[License]:
    """A private account's single license."""
    return License.query.filter_by(owner_id=account_id).order_by(License.id).first()


def _private_license(subscription: Subscription) -> Optional[License]:
    return subscription.license or owned_license(subscription.account_id)


def _business_license(subscription: Subscription) -> Optional[License]:
    # Business owners may hold several licenses; only the bound one counts.
    return subscription.license


_LICENSE_RESOLVERS: dict[AccountKind, Callable[[Subscription], Optional[License]]] = exhaustive(
    {
        AccountKind.PRIVATE: _private_license,
        AccountKind.BUSINESS: _business_license,
    },
    "license resolution",
)


def resolve_license(subscription: Subscription) -> Optional[License]:
    return _LICENSE_RESOLVERS[subscription.account.kind](subscription)
