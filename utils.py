"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
#
# Billing dates are stored as naive UTC datetimes; SQLite drops tzinfo anyway
# and comparing aware with naive values raises.
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> datetime.date:
    return utc_now().date()


def day_bounds(day: datetime.date) -> tuple[datetime.datetime, datetime.datetime]:
    """Return ``[start, end)`` of *day* as naive datetimes."""
    start = datetime.datetime.combine(day, datetime.time.min)
    return start, start + datetime.timedelta(days=1)


def first_of_month_after(moment: datetime.datetime, months: int) -> datetime.datetime:
    """First day (midnight) of the month *months* after *moment*'s month.

    >>> first_of_month_after(datetime.datetime(2025, 12, 17, 9, 30), 1)
    datetime.datetime(2026, 1, 1, 0, 0)
    """
    index = moment.year * 12 + (moment.month - 1) + months
    return datetime.datetime(index // 12, index % 12 + 1, 1)


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def format_cents(amount: int, currency: str = "usd") -> str:
    """Render minor units for descriptions and logs: ``1250`` -> ``"12.50 USD"``."""
    return f"{amount / 100:.2f} {currency.upper()}"
