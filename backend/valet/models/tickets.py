from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


RATE_HOURLY = "HOURLY"
RATE_OVERNIGHT = "OVERNIGHT"
VALID_RATE_TYPES = {RATE_HOURLY, RATE_OVERNIGHT}

STATUS_CHECKED_IN = "CHECKED_IN"
STATUS_READY_FOR_PICKUP = "READY_FOR_PICKUP"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
VALID_TICKET_STATUSES = {STATUS_CHECKED_IN, STATUS_READY_FOR_PICKUP, STATUS_COMPLETED, STATUS_CANCELLED}
OPEN_TICKET_STATUSES = (STATUS_CHECKED_IN, STATUS_READY_FOR_PICKUP)

VEHICLE_WITH_US = "WITH_US"
VEHICLE_AWAY = "AWAY"
VALID_VEHICLE_STATUSES = {VEHICLE_WITH_US, VEHICLE_AWAY}


class Ticket(db.Model):
    """
    One valet engagement from check-in to completion or cancellation.

    status and vehicle_status are independent axes; lifecycle_service owns
    every change to either. will_return is tri-state: NULL until the
    customer answers the return question.
    """
    __tablename__ = "tickets"
    __table_args__ = (
        db.Index("ix_tickets_location_number", "location_id", "ticket_number"),
        db.Index("ix_tickets_status_phone", "status", "customer_phone_e164"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    ticket_number = db.Column(db.String(50), nullable=False)

    customer_name = db.Column(db.String(120), nullable=False)
    # As entered by staff; customer_phone_e164 is the canonical form used for matching
    customer_phone = db.Column(db.String(30), nullable=False, index=True)
    customer_phone_e164 = db.Column(db.String(20), nullable=True)

    vehicle_make = db.Column(db.String(80), nullable=False)
    vehicle_model = db.Column(db.String(80), nullable=False)
    vehicle_color = db.Column(db.String(60), nullable=True)
    license_plate = db.Column(db.String(40), nullable=True)
    parking_location = db.Column(db.String(80), nullable=True)

    rate_type = db.Column(db.String(16), nullable=False)  # HOURLY, OVERNIGHT
    in_out_privileges = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(24), nullable=False, default=STATUS_CHECKED_IN, index=True)
    vehicle_status = db.Column(db.String(16), nullable=False, default=VEHICLE_WITH_US, index=True)

    check_in_time = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    check_out_time = db.Column(db.DateTime, nullable=True)

    # Prepaid stay; only the one matching rate_type is honoured by pricing
    duration_hours = db.Column(db.Integer, nullable=True)
    duration_days = db.Column(db.Integer, nullable=True)

    will_return = db.Column(db.Boolean, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    location = db.relationship("Location", backref=db.backref("tickets", lazy=True))
    payments = db.relationship(
        "Payment",
        back_populates="ticket",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Payment.created_at",
    )
    messages = db.relationship(
        "Message",
        back_populates="ticket",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Message.sent_at",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TICKET_STATUSES

    def __repr__(self) -> str:
        return f"<Ticket id={self.id} number={self.ticket_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "ticket_number": self.ticket_number,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "vehicle_make": self.vehicle_make,
            "vehicle_model": self.vehicle_model,
            "vehicle_color": self.vehicle_color,
            "license_plate": self.license_plate,
            "parking_location": self.parking_location,
            "rate_type": self.rate_type,
            "in_out_privileges": self.in_out_privileges,
            "status": self.status,
            "vehicle_status": self.vehicle_status,
            "check_in_time": to_utc_z(self.check_in_time),
            "check_out_time": to_utc_z(self.check_out_time),
            "duration_hours": self.duration_hours,
            "duration_days": self.duration_days,
            "will_return": self.will_return,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
