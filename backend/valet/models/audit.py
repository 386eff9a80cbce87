from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class AuditLog(db.Model):
    """
    Append-only record of every state-changing action.

    ticket_id is nulled (not cascaded) when a ticket is deleted so the
    TICKET_DELETED entry written beforehand survives the removal.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_ticket_occurred", "ticket_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True, index=True)
    action = db.Column(db.String(32), nullable=False, index=True)
    actor = db.Column(db.String(120), nullable=True)  # staff name; NULL for automation
    details = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "action": self.action,
            "actor": self.actor,
            "details": dict(self.details or {}),
            "occurred_at": to_utc_z(self.occurred_at),
        }
