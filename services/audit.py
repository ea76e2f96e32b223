"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: str = "",
    *,
    account_id: Optional[int] = None,
) -> None:
    """Record an audit log entry for an operator-visible billing action.

    NOTE: This does NOT commit; the caller is responsible for committing
    the session, so the entry lands in the same transaction as the change.
    """
    db.session.add(
        AuditLog(
            account_id=account_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )
