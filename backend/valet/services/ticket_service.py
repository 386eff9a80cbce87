# Overview: Staff ticket operations; create, update, delete, list and billing summaries.

"""
Valet Ticket Service

WHY: Staff API calls drive the same pricing/ledger/lifecycle rules as the
SMS automation. Every mutation here is atomic: a rejected status change
(PaymentRequiredError, SettlementRequiredBeforeDepartureError) or a failed
validation rolls back the whole update, including unrelated field edits in
the same request.

PATCH ORDER:
1. Validate and apply plain field edits (duration, rate type, location...).
2. Evaluate status/vehicle-status gates against the ticket's billing facts
   AFTER those edits (a longer prepaid stay can make a ticket unpaid).
3. Write a single TICKET_UPDATED audit entry with the field diff.
4. Commit.

Check-in automation (payment link or welcome text) runs after the create
has committed and never fails the create.
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import current_app

from ..decorators import StaffContext
from ..errors import ConflictError, NotFoundError, PermissionDeniedError, ValetError, ValidationError
from ..extensions import db
from ..models import AuditLog, Location, Ticket
from ..models.tickets import (
    OPEN_TICKET_STATUSES,
    RATE_HOURLY,
    RATE_OVERNIGHT,
    STATUS_CHECKED_IN,
    STATUS_READY_FOR_PICKUP,
    VEHICLE_AWAY,
    VEHICLE_WITH_US,
)
from ..time_utils import utcnow
from ..validation import TICKET_POLICY, enforce_rules_ticket, validate_payload
from . import ledger_service, lifecycle_service, message_service, payment_service
from .audit_service import TICKET_CREATED, TICKET_DELETED, TICKET_UPDATED, append_audit_event, diff_fields
from .concurrency import lock_for_update, run_with_retry
from .phone_service import normalize_phone
from .pricing_service import (
    PricingSchedule,
    calculate_projected_amount_cents,
    elapsed_hours,
    ticket_has_in_out_privileges,
)
from .providers import get_providers


logger = logging.getLogger(__name__)

_GATED_FIELDS = {"status", "vehicle_status"}
_AUDITED_FIELDS = sorted(TICKET_POLICY.writable_fields)


# =============================================================================
# READS
# =============================================================================

def get_ticket(ticket_id: int, *, staff: Optional[StaffContext] = None) -> Ticket:
    ticket = db.session.get(Ticket, ticket_id)
    if not ticket:
        raise NotFoundError("Ticket not found")
    if staff is not None and not staff.can_access_location(ticket.location_id):
        raise PermissionDeniedError("You do not have access to this ticket")
    return ticket


def ticket_summary(ticket: Ticket, *, now=None) -> dict:
    """Ticket row plus the derived billing view staff screens need."""
    now = now or utcnow()
    schedule = PricingSchedule.from_location(ticket.location)
    ledger = ledger_service.snapshot(ticket, now=now, schedule=schedule)
    data = ticket.to_dict()
    data.update(ledger.to_dict())
    data["elapsed_hours"] = elapsed_hours(ticket, now)
    data["has_in_out_privileges"] = ticket_has_in_out_privileges(ticket, schedule)
    data["location_name"] = ticket.location.name if ticket.location else None
    return data


def list_tickets(
    *,
    location_id: Optional[int] = None,
    status: Optional[str] = None,
    vehicle_status: Optional[str] = None,
    search: Optional[str] = None,
    staff: Optional[StaffContext] = None,
) -> tuple[list[dict], dict]:
    """Summaries (newest check-in first) plus aggregate metrics."""
    query = db.session.query(Ticket)

    restricted = staff.restricted_location_id if staff else None
    if restricted is not None:
        if location_id is not None and location_id != restricted:
            raise PermissionDeniedError("You do not have access to this location")
        location_id = restricted

    if location_id is not None:
        query = query.filter(Ticket.location_id == location_id)
    if status:
        lifecycle_service.validate_status(status)
        query = query.filter(Ticket.status == status)
    if vehicle_status:
        lifecycle_service.validate_vehicle_status(vehicle_status)
        query = query.filter(Ticket.vehicle_status == vehicle_status)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(
            db.or_(
                Ticket.ticket_number.ilike(like),
                Ticket.customer_name.ilike(like),
                Ticket.license_plate.ilike(like),
            )
        )

    now = utcnow()
    summaries = [ticket_summary(t, now=now) for t in query.order_by(Ticket.check_in_time.desc()).all()]
    metrics = {
        "total": len(summaries),
        "with_us": sum(1 for t in summaries if t["vehicle_status"] == VEHICLE_WITH_US),
        "away": sum(1 for t in summaries if t["vehicle_status"] == VEHICLE_AWAY),
        "ready": sum(1 for t in summaries if t["status"] == STATUS_READY_FOR_PICKUP),
        "projected_revenue_cents": sum(t["projected_amount_cents"] for t in summaries),
    }
    return summaries, metrics


# =============================================================================
# CREATE
# =============================================================================

def _get_location(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if not location:
        raise ValidationError("Invalid location")
    return location


def _ensure_number_available(location_id: int, ticket_number: str, *, exclude_id: Optional[int] = None) -> None:
    query = db.session.query(Ticket).filter(
        Ticket.location_id == location_id,
        db.func.lower(Ticket.ticket_number) == ticket_number.lower(),
        Ticket.status.in_(OPEN_TICKET_STATUSES),
    )
    if exclude_id is not None:
        query = query.filter(Ticket.id != exclude_id)
    if query.first():
        raise ConflictError(f"Ticket number {ticket_number} is already in use at this location")


def create_ticket(payload: dict, *, staff: Optional[StaffContext] = None) -> Ticket:
    """
    Check a vehicle in. New tickets always start CHECKED_IN / WITH_US.

    STAFF users bound to a location can only create tickets there.
    """
    payload = dict(payload or {})
    restricted = staff.restricted_location_id if staff else None
    if restricted is not None:
        payload["location_id"] = restricted

    patch = validate_payload(model=Ticket, payload=payload, policy=TICKET_POLICY, partial=False)
    for field in ("status", "vehicle_status", "will_return", "check_out_time"):
        if patch.get(field) is not None:
            raise ValidationError(f"{field} cannot be set when creating a ticket")
        patch.pop(field, None)
    enforce_rules_ticket(patch)

    location = _get_location(patch["location_id"])
    _ensure_number_available(location.id, patch["ticket_number"])

    if not normalize_phone(patch["customer_phone"]):
        raise ValidationError("customer_phone must contain digits")

    ticket = Ticket(
        **patch,
        customer_phone_e164=normalize_phone(patch["customer_phone"]),
        status=STATUS_CHECKED_IN,
        vehicle_status=VEHICLE_WITH_US,
    )
    if ticket.check_in_time is None:
        ticket.check_in_time = utcnow()
    db.session.add(ticket)
    db.session.flush()

    append_audit_event(
        action=TICKET_CREATED,
        ticket_id=ticket.id,
        actor=staff.name if staff else None,
        details={
            "ticket_number": ticket.ticket_number,
            "location_id": location.id,
            "rate_type": ticket.rate_type,
        },
    )
    db.session.commit()
    logger.info("Ticket %s created at %s", ticket.ticket_number, location.identifier)
    return ticket


def welcome_message(ticket: Ticket, in_out_allowed: bool) -> str:
    brand = current_app.config.get("BRAND_NAME", "ValetPro")
    valet_number = current_app.config.get("TWILIO_FROM_NUMBER") or "this number"
    body = (
        f"Hi {ticket.customer_name}, welcome to {brand} at {ticket.location.name}. "
        f"Text {valet_number} with your ticket {ticket.ticket_number} when you're ready for your vehicle."
    )
    if in_out_allowed:
        body += " Since you have in/out privileges, please let us know if you'll be returning so we can keep your spot ready."
    return body


def run_checkin_automation(ticket: Ticket) -> dict:
    """
    Payment link when both providers are usable and something is owed,
    otherwise a welcome text. Never raises.
    """
    caps = get_providers().capabilities
    if not caps.can_send_sms:
        return {"action": "none", "reason": "sms_unavailable"}

    try:
        amount = calculate_projected_amount_cents(ticket)
        if amount > 0 and caps.can_create_payment_links:
            brand = current_app.config.get("BRAND_NAME", "ValetPro")
            result = payment_service.issue_payment_link(
                ticket.id,
                reason=message_service.REASON_INITIAL_PAYMENT,
                automated=True,
                lead=f"Thanks for using {brand} at {ticket.location.name}! To request your car, pay here:",
                raise_on_failure=False,
            )
            if result.sent:
                return {"action": message_service.REASON_INITIAL_PAYMENT, "payment_id": result.payment.id}
            logger.warning("Initial payment link not sent for ticket %s: %s", ticket.ticket_number, result.action)

        body = welcome_message(ticket, ticket_has_in_out_privileges(ticket))
        message = message_service.notify_customer(ticket, body, reason=message_service.REASON_WELCOME)
        return {"action": message_service.REASON_WELCOME, "sent": message is not None}
    except ValetError as e:
        db.session.rollback()
        logger.exception("Check-in automation failed for ticket %s: %s", ticket.ticket_number, e.message)
        return {"action": "none", "reason": e.message}


# =============================================================================
# UPDATE
# =============================================================================

def _snapshot_fields(ticket: Ticket) -> dict:
    return {f: getattr(ticket, f) for f in _AUDITED_FIELDS}


def update_ticket(ticket_id: int, payload: dict, *, staff: Optional[StaffContext] = None) -> Ticket:
    """
    Apply a staff PATCH atomically; see module docstring for ordering.

    Location reassignment requires a privileged role.
    """
    patch = validate_payload(model=Ticket, payload=payload, policy=TICKET_POLICY, partial=True)
    if not patch:
        raise ValidationError("No fields to update")

    def _update() -> Ticket:
        ticket = lock_for_update(db.session.query(Ticket).filter(Ticket.id == ticket_id)).first()
        if not ticket:
            raise NotFoundError("Ticket not found")
        if staff is not None and not staff.can_access_location(ticket.location_id):
            raise PermissionDeniedError("You do not have access to this ticket")

        enforce_rules_ticket(patch, rate_type=ticket.rate_type)
        before = _snapshot_fields(ticket)

        if "location_id" in patch and patch["location_id"] != ticket.location_id:
            if staff is not None and not staff.is_privileged:
                raise PermissionDeniedError("Only managers and admins can move a ticket to another location")
            _get_location(patch["location_id"])

        new_location = patch.get("location_id", ticket.location_id)
        new_number = patch.get("ticket_number", ticket.ticket_number)
        if ticket.is_open and (new_location != ticket.location_id or new_number != ticket.ticket_number):
            _ensure_number_available(new_location, new_number, exclude_id=ticket.id)

        for field, value in patch.items():
            if field in _GATED_FIELDS:
                continue
            setattr(ticket, field, value)

        if "customer_phone" in patch:
            canonical = normalize_phone(ticket.customer_phone)
            if not canonical:
                raise ValidationError("customer_phone must contain digits")
            ticket.customer_phone_e164 = canonical
        if "location_id" in patch:
            # Relationship must follow the FK before pricing reads it
            ticket.location = db.session.get(Location, ticket.location_id)
        if ticket.check_out_time and ticket.check_out_time < ticket.check_in_time:
            raise ValidationError("check_out_time cannot be before check_in_time")

        # Switching rate type drops the prepaid duration that no longer applies
        if "rate_type" in patch:
            if ticket.rate_type == RATE_HOURLY and "duration_days" not in patch:
                ticket.duration_days = None
            if ticket.rate_type == RATE_OVERNIGHT and "duration_hours" not in patch:
                ticket.duration_hours = None

        if _GATED_FIELDS & patch.keys():
            lifecycle_service.apply_transition(
                ticket,
                status=patch.get("status"),
                vehicle_status=patch.get("vehicle_status"),
                actor=staff.name if staff else None,
                reason="staff_update",
                record_audit=False,
            )

        changes = diff_fields(before, _snapshot_fields(ticket))
        if changes:
            append_audit_event(
                action=TICKET_UPDATED,
                ticket_id=ticket.id,
                actor=staff.name if staff else None,
                details={"ticket_number": ticket.ticket_number, "changes": changes},
            )
        db.session.commit()
        return ticket

    try:
        return run_with_retry(_update)
    except ValetError:
        db.session.rollback()
        raise


# =============================================================================
# DELETE
# =============================================================================

def delete_ticket(ticket_id: int, *, staff: Optional[StaffContext] = None) -> None:
    """
    Hard-delete a ticket with its payments and messages (privileged).

    The TICKET_DELETED audit entry is written first and survives with a
    NULL ticket_id, as do the ticket's earlier audit rows.
    """
    ticket = get_ticket(ticket_id, staff=staff)
    snapshot = ticket_summary(ticket)

    append_audit_event(
        action=TICKET_DELETED,
        ticket_id=ticket.id,
        actor=staff.name if staff else None,
        details={
            "ticket_id": ticket.id,
            "ticket_number": ticket.ticket_number,
            "location_id": ticket.location_id,
            "status": ticket.status,
            "payments": len(ticket.payments),
            "messages": len(ticket.messages),
            "amount_paid_cents": snapshot["amount_paid_cents"],
        },
    )
    db.session.query(AuditLog).filter(AuditLog.ticket_id == ticket.id).update(
        {AuditLog.ticket_id: None}, synchronize_session=False
    )
    db.session.delete(ticket)
    db.session.commit()
    logger.info("Ticket %s deleted by %s", snapshot["ticket_number"], staff.name if staff else "system")
