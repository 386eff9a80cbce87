# Overview: Records inbound/outbound SMS for tickets and sends customer notifications.

"""
Message Service

WHY: Messages are the customer-facing audit trail. Every inbound text that
resolves to a ticket is written (and committed) before any automation runs,
and every outbound text records what was actually handed to the provider.

TWO SENDING MODES:
- send_staff_message(): staff-triggered. Provider errors propagate
  (ProviderUnavailableError -> 503) and nothing is recorded.
- notify_customer(): automation and post-commit notifications. Best-effort:
  provider errors are logged, a FAILED outbound row is recorded, and the
  caller's already-committed state is never rolled back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..errors import NotFoundError, ProviderUnavailableError, ValetError, ValidationError
from ..extensions import db
from ..models import Message, MessageTemplate, Ticket
from ..models.messages import (
    DELIVERY_FAILED,
    DELIVERY_RECEIVED,
    DELIVERY_SENT,
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
)
from ..time_utils import utcnow
from .audit_service import MESSAGE_RECEIVED, MESSAGE_SENT, append_audit_event
from .phone_service import mask_phone
from .providers import SMS_PROVIDER, get_providers


logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500

REASON_WELCOME = "welcome"
REASON_INITIAL_PAYMENT = "initial_payment"
REASON_PAYMENT_REQUEST = "payment_request"
REASON_PICKUP_ACK = "pickup_acknowledgement"
REASON_RETURN_QUESTION = "return_confirmation_question"
REASON_RETURN_ACK = "return_confirmation_ack"
REASON_PAYMENT_CONFIRMATION = "payment_confirmation"
REASON_REFUND_CONFIRMATION = "refund_confirmation"
REASON_STAFF = "staff"


# =============================================================================
# INBOUND
# =============================================================================

def record_inbound(
    ticket: Ticket,
    *,
    body: str,
    sender: str,
    provider_message_id: Optional[str] = None,
    duplicate_of: Optional[int] = None,
    extra: Optional[dict] = None,
    received_at: Optional[datetime] = None,
) -> Message:
    """Add the inbound row and its MESSAGE_RECEIVED audit entry (flush, no commit)."""
    metadata = {
        "from": sender,
        "provider_message_id": provider_message_id,
    }
    if duplicate_of is not None:
        metadata["duplicate_of"] = duplicate_of
    metadata.update(extra or {})

    message = Message(
        ticket_id=ticket.id,
        direction=DIRECTION_INBOUND,
        body=body,
        delivery_status=DELIVERY_RECEIVED,
        message_metadata=metadata,
        sent_at=received_at or utcnow(),
    )
    db.session.add(message)
    db.session.flush()

    append_audit_event(
        action=MESSAGE_RECEIVED,
        ticket_id=ticket.id,
        details={
            "message_id": message.id,
            "ticket_number": ticket.ticket_number,
            "duplicate_of": duplicate_of,
            "matched_by": metadata.get("matched_by"),
        },
        occurred_at=message.sent_at,
    )
    return message


def find_duplicate_inbound(
    ticket: Ticket,
    *,
    body: str,
    sender: str,
    provider_message_id: Optional[str],
    now: datetime,
    window_seconds: int,
) -> Optional[Message]:
    """
    An earlier inbound row this delivery repeats, if any.

    With a provider message id only the id is compared, at any age; a new
    id is a new customer message even when the body repeats. Without one,
    the same sender and body inside the redelivery window counts as a
    resend.
    """
    query = db.session.query(Message).filter(
        Message.ticket_id == ticket.id,
        Message.direction == DIRECTION_INBOUND,
    )
    if not provider_message_id:
        cutoff = now - timedelta(seconds=window_seconds)
        query = query.filter(Message.body == body, Message.sent_at >= cutoff)
    candidates = query.order_by(Message.sent_at.asc(), Message.id.asc()).all()

    for message in candidates:
        metadata = message.message_metadata or {}
        if metadata.get("duplicate_of") is not None:
            continue
        if provider_message_id:
            if metadata.get("provider_message_id") == provider_message_id:
                return message
        elif metadata.get("from") == sender:
            return message
    return None


# =============================================================================
# OUTBOUND
# =============================================================================

def _record_outbound(
    ticket: Ticket,
    *,
    body: str,
    delivery_status: str,
    metadata: dict,
    actor: Optional[str],
    template_id: Optional[int] = None,
) -> Message:
    message = Message(
        ticket_id=ticket.id,
        direction=DIRECTION_OUTBOUND,
        body=body,
        delivery_status=delivery_status,
        template_id=template_id,
        message_metadata=metadata,
    )
    db.session.add(message)
    db.session.flush()

    append_audit_event(
        action=MESSAGE_SENT,
        ticket_id=ticket.id,
        actor=actor,
        details={
            "message_id": message.id,
            "ticket_number": ticket.ticket_number,
            "reason": metadata.get("reason"),
            "automated": metadata.get("automated", False),
            "delivery_status": delivery_status,
        },
        occurred_at=message.sent_at,
    )
    return message


def deliver(
    ticket: Ticket,
    body: str,
    *,
    reason: str,
    automated: bool,
    actor: Optional[str] = None,
    template_id: Optional[int] = None,
    extra_metadata: Optional[dict] = None,
) -> Message:
    """
    Send through the SMS gateway, then record the outbound row.

    Raises ProviderUnavailableError / ValidationError from the gateway
    without recording anything. Does not commit.
    """
    providers = get_providers()
    if not providers.capabilities.can_send_sms:
        raise ProviderUnavailableError(SMS_PROVIDER, messaging_status()["message"])
    sent = providers.sms.send(ticket.customer_phone, body)
    metadata = {
        "automated": automated,
        "reason": reason,
        "provider_message_id": sent.provider_message_id,
        "provider_status": sent.status,
    }
    metadata.update(extra_metadata or {})
    return _record_outbound(
        ticket,
        body=body,
        delivery_status=DELIVERY_SENT,
        metadata=metadata,
        actor=actor,
        template_id=template_id,
    )


def notify_customer(
    ticket: Ticket,
    body: str,
    *,
    reason: str,
    actor: Optional[str] = None,
    extra_metadata: Optional[dict] = None,
) -> Optional[Message]:
    """
    Best-effort automated text; commits its own record.

    Use only after the state it describes has been committed. Returns the
    SENT message, or None when delivery failed (a FAILED row is kept).
    """
    try:
        message = deliver(
            ticket,
            body,
            reason=reason,
            automated=True,
            actor=actor,
            extra_metadata=extra_metadata,
        )
        db.session.commit()
        logger.info("Sent %s SMS for ticket %s to %s", reason, ticket.ticket_number, mask_phone(ticket.customer_phone))
        return message
    except ValetError as e:
        db.session.rollback()
        logger.exception(
            "Automated %s SMS for ticket %s failed: %s", reason, ticket.ticket_number, e.message
        )
        metadata = {"automated": True, "reason": reason, "error": e.message}
        metadata.update(extra_metadata or {})
        _record_outbound(ticket, body=body, delivery_status=DELIVERY_FAILED, metadata=metadata, actor=actor)
        db.session.commit()
        return None


# =============================================================================
# STAFF OPERATIONS
# =============================================================================

def get_template(template_id: int) -> MessageTemplate:
    template = db.session.get(MessageTemplate, template_id)
    if not template:
        raise NotFoundError("Message template not found")
    return template


def send_staff_message(
    ticket: Ticket,
    *,
    body: Optional[str],
    template_id: Optional[int] = None,
    actor: Optional[str] = None,
) -> Message:
    """Free-form or templated text from staff; provider failures propagate."""
    if template_id is not None:
        template = get_template(template_id)
        body = body or template.body
    body = (body or "").strip()
    if not body:
        raise ValidationError("body or template_id is required")
    if len(body) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"body exceeds max length {MAX_MESSAGE_LENGTH}")
    if not ticket.customer_phone:
        raise ValidationError("Ticket does not have a customer phone number")

    message = deliver(
        ticket,
        body,
        reason=REASON_STAFF,
        automated=False,
        actor=actor,
        template_id=template_id,
        extra_metadata={"sent_by": actor},
    )
    db.session.commit()
    return message


def list_messages(*, ticket_id: Optional[int] = None, location_id: Optional[int] = None, limit: int = 200) -> list[Message]:
    query = db.session.query(Message)
    if ticket_id is not None:
        query = query.filter(Message.ticket_id == ticket_id)
    if location_id is not None:
        query = query.join(Ticket, Ticket.id == Message.ticket_id).filter(Ticket.location_id == location_id)
    return query.order_by(Message.sent_at.desc(), Message.id.desc()).limit(limit).all()


def list_templates() -> list[MessageTemplate]:
    return db.session.query(MessageTemplate).order_by(MessageTemplate.updated_at.desc(), MessageTemplate.id.desc()).all()


def create_template(*, name: str, body: str) -> MessageTemplate:
    name = (name or "").strip()
    body = (body or "").strip()
    if not name or not body:
        raise ValidationError("name and body are required")
    if len(body) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"body exceeds max length {MAX_MESSAGE_LENGTH}")
    if db.session.query(MessageTemplate).filter_by(name=name).first():
        raise ValidationError(f"A template named '{name}' already exists")

    template = MessageTemplate(name=name, body=body)
    db.session.add(template)
    db.session.commit()
    return template


def messaging_status() -> dict:
    caps = get_providers().capabilities
    if not caps.sms_configured:
        note = "SMS provider is not configured. Set TWILIO_SID, TWILIO_AUTH and TWILIO_FROM_NUMBER."
    elif caps.sms_disabled:
        note = "SMS sending is currently disabled. Set DISABLE_SMS_SENDING=false to enable."
    else:
        note = "Messaging is configured and enabled."
    return {"configured": caps.sms_configured, "disabled": caps.sms_disabled, "message": note}
