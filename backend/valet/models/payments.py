from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


PAYMENT_PENDING = "PENDING"
PAYMENT_LINK_SENT = "PAYMENT_LINK_SENT"
PAYMENT_COMPLETED = "COMPLETED"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"
VALID_PAYMENT_STATUSES = {PAYMENT_PENDING, PAYMENT_LINK_SENT, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_REFUNDED}
OPEN_PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_LINK_SENT)


class Payment(db.Model):
    """
    A requested payment against a ticket, collected through a hosted link.

    Lifecycle: PENDING -> PAYMENT_LINK_SENT -> COMPLETED (-> REFUNDED once
    refund_amount_cents reaches amount_cents), or -> FAILED.

    A PENDING row is written before the provider is asked for a link so
    concurrent requests see the in-flight link; provider_link_id stays NULL
    until the provider has actually created it.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("refund_amount_cents >= 0", name="ck_payments_refund_non_negative"),
        db.CheckConstraint("refund_amount_cents <= amount_cents", name="ck_payments_refund_le_amount"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(24), nullable=False, default=PAYMENT_PENDING, index=True)

    provider_link_id = db.Column(db.String(128), nullable=True, index=True)
    link_url = db.Column(db.String(512), nullable=True)

    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_at = db.Column(db.DateTime, nullable=True)
    provider_refund_id = db.Column(db.String(128), nullable=True)

    # reason, initiated_by, checkout_session_id, payment_intent_id, refunds[]
    payment_metadata = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    ticket = db.relationship("Ticket", back_populates="payments")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refundable_cents(self) -> int:
        return self.amount_cents - (self.refund_amount_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "provider_link_id": self.provider_link_id,
            "link_url": self.link_url,
            "refund_amount_cents": self.refund_amount_cents or 0,
            "refunded_at": to_utc_z(self.refunded_at),
            "provider_refund_id": self.provider_refund_id,
            "metadata": dict(self.payment_metadata or {}),
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "version_id": self.version_id,
        }
