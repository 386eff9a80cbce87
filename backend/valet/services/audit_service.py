# Overview: Append-only audit trail for ticket, payment and message events.

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from ..extensions import db
from ..models import AuditLog
from ..time_utils import to_utc_z, utcnow


"""
Audit Log Invariants

- Append-only: rows are never updated; deleting a ticket nulls ticket_id
  on its rows instead of removing them.
- Written in the same DB transaction as the change they describe.
- actor is the staff member's name, or None for automation/webhooks.
"""

TICKET_CREATED = "TICKET_CREATED"
TICKET_UPDATED = "TICKET_UPDATED"
TICKET_DELETED = "TICKET_DELETED"
STATUS_CHANGED = "STATUS_CHANGED"
VEHICLE_STATUS_CHANGED = "VEHICLE_STATUS_CHANGED"
MESSAGE_SENT = "MESSAGE_SENT"
MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
PAYMENT_LINK_SENT = "PAYMENT_LINK_SENT"
PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
LOCATION_UPDATED = "LOCATION_UPDATED"
AUTOMATION_NOTE = "AUTOMATION_NOTE"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def append_audit_event(
    *,
    action: str,
    ticket_id: int | None = None,
    actor: str | None = None,
    details: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> AuditLog:
    """Add an audit row to the current transaction (flushes, does not commit)."""
    entry = AuditLog(
        ticket_id=ticket_id,
        action=action,
        actor=actor,
        details=_jsonable(details or {}),
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def diff_fields(before: dict, after: dict) -> dict:
    """{field: {"from": old, "to": new}} for every key whose value changed."""
    changes = {}
    for key, new_value in after.items():
        old_value = before.get(key)
        if old_value != new_value:
            changes[key] = {"from": _jsonable(old_value), "to": _jsonable(new_value)}
    return changes


def list_ticket_audit(ticket_id: int, limit: int = 100) -> list[AuditLog]:
    return (
        db.session.query(AuditLog)
        .filter_by(ticket_id=ticket_id)
        .order_by(AuditLog.occurred_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .all()
    )
