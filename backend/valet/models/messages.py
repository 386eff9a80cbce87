from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


DIRECTION_INBOUND = "INBOUND"
DIRECTION_OUTBOUND = "OUTBOUND"

DELIVERY_SENT = "SENT"
DELIVERY_FAILED = "FAILED"
DELIVERY_DELIVERED = "DELIVERED"
DELIVERY_RECEIVED = "RECEIVED"


class Message(db.Model):
    """
    SMS exchanged with a ticket's customer.

    Append-only. Inbound rows are written before any automation they
    trigger; outbound rows record what was actually handed to the provider.
    """
    __tablename__ = "messages"
    __table_args__ = (
        db.Index("ix_messages_ticket_sent", "ticket_id", "sent_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    direction = db.Column(db.String(16), nullable=False)  # INBOUND, OUTBOUND
    body = db.Column(db.Text, nullable=False)
    delivery_status = db.Column(db.String(16), nullable=False, default=DELIVERY_SENT)
    template_id = db.Column(db.Integer, db.ForeignKey("message_templates.id"), nullable=True)

    # automated, reason, from, provider_message_id, duplicate_of, ...
    message_metadata = db.Column("metadata", db.JSON, nullable=True)

    sent_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    ticket = db.relationship("Ticket", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "direction": self.direction,
            "body": self.body,
            "delivery_status": self.delivery_status,
            "template_id": self.template_id,
            "metadata": dict(self.message_metadata or {}),
            "sent_at": to_utc_z(self.sent_at),
        }


class MessageTemplate(db.Model):
    __tablename__ = "message_templates"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "body": self.body,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
