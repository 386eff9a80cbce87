# Overview: Inbound SMS automation; picks and executes one action per customer message.

"""
Inbound Automation Orchestrator

================================================================================
ORDER OF WORK (per inbound delivery)
================================================================================
1. Interpret: resolve the ticket and classify intent (inbound_service).
   No sender or no ticket -> logged and dropped, nothing persisted.
2. Persist the inbound message + MESSAGE_RECEIVED audit and COMMIT, before
   anything else can fail.
3. Redelivery (same provider MessageSid; without a sid, same sender+body
   inside the window) -> recorded with duplicate_of, no automation. A new
   sid with a repeated body is a new message.
4. Decide against current state, re-read under a row lock:

   | # | Condition                                                    | Action             |
   |---|--------------------------------------------------------------|--------------------|
   | 1 | READY_FOR_PICKUP, in/out, will_return unknown, yes/no reply  | record will_return |
   | 2 | pickup request or plain yes, balance outstanding             | send payment link  |
   | 3 | pickup request or plain yes, settled                         | mark READY + ack   |
   | 4 | in/out privileges and a yes/no reply                         | audit note only    |
   | 5 | anything else                                                | nothing            |

   Row 3 on a ticket that is already READY does nothing (no repeat ack).
5. State changes COMMIT first; customer texts go out afterwards and are
   best-effort. Payment links follow payment_service's claim protocol.

Intent alone never triggers an action: every delivery re-reads the ticket
and its payments, so a retried or repeated message cannot issue a second
link or a second acknowledgement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from flask import current_app

from ..errors import ValetError
from ..extensions import db
from ..models import Ticket
from ..models.tickets import STATUS_READY_FOR_PICKUP, VEHICLE_AWAY
from ..time_utils import utcnow
from . import ledger_service, message_service, payment_service
from .audit_service import AUTOMATION_NOTE, TICKET_UPDATED, append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .inbound_service import InterpretedMessage, MessageIntent, interpret
from .lifecycle_service import apply_transition
from .phone_service import mask_phone
from .pricing_service import PricingSchedule, ticket_has_in_out_privileges
from .providers import get_providers


logger = logging.getLogger(__name__)

ACTION_RECORD_RETURN = "record_return_answer"
ACTION_SEND_PAYMENT_LINK = "send_payment_link"
ACTION_MARK_READY = "mark_ready"
ACTION_NOTE = "note_only"
ACTION_NONE = "none"

OUTCOME_UNMATCHED = "unmatched"
OUTCOME_DUPLICATE = "duplicate"

RETURN_QUESTION = "Will you be returning with your car today? Reply RETURN if returning, or NOT RETURNING if not."
RETURN_YES_ACK = "Got it! We'll keep your spot ready for your return."
RETURN_NO_ACK = "Thanks for letting us know!"


@dataclass(frozen=True)
class Decision:
    action: str
    reason: str
    will_return: Optional[bool] = None


def decide_action(
    *,
    status: str,
    vehicle_status: str,
    will_return: Optional[bool],
    in_out_allowed: bool,
    settled: bool,
    intent: MessageIntent,
) -> Decision:
    """Pure decision table; first matching row wins."""
    if status == STATUS_READY_FOR_PICKUP and in_out_allowed and will_return is None and intent.is_yes_no:
        return Decision(ACTION_RECORD_RETURN, "return_confirmation", will_return=intent.says_will_return)

    wants_car = intent.pickup_request or intent.says_will_return
    if wants_car and not settled:
        return Decision(ACTION_SEND_PAYMENT_LINK, "pickup_request_payment_required")

    if wants_car:
        if status == STATUS_READY_FOR_PICKUP:
            return Decision(ACTION_NONE, "already_ready")
        if vehicle_status == VEHICLE_AWAY:
            return Decision(ACTION_NOTE, "pickup_request_vehicle_away")
        return Decision(ACTION_MARK_READY, "customer_pickup_request")

    if in_out_allowed and intent.is_yes_no:
        return Decision(ACTION_NOTE, "yes_no_reply_without_question")

    return Decision(ACTION_NONE, "no_actionable_intent")


@dataclass
class InboundOutcome:
    action: str
    ticket_id: Optional[int] = None
    message_id: Optional[int] = None
    matched_by: Optional[str] = None
    duplicate_of: Optional[int] = None
    reason: Optional[str] = None
    notifications: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "ticket_id": self.ticket_id,
            "message_id": self.message_id,
            "matched_by": self.matched_by,
            "duplicate_of": self.duplicate_of,
            "reason": self.reason,
            "notifications": list(self.notifications),
        }


@dataclass(frozen=True)
class _Applied:
    decision: Decision
    ask_return_question: bool = False


# =============================================================================
# ENTRY POINT
# =============================================================================

def handle_inbound_message(
    *,
    body: Optional[str],
    sender: Optional[str],
    provider_message_id: Optional[str] = None,
    recipient: Optional[str] = None,
) -> InboundOutcome:
    interpreted = interpret(body, sender)
    if not interpreted.phone:
        logger.warning("Dropping inbound message without a sender number")
        return InboundOutcome(OUTCOME_UNMATCHED)

    ticket = interpreted.ticket

    if ticket is None:
        logger.warning(
            "Dropping inbound message from %s: no open ticket matched (ticket token %r, body %r)",
            mask_phone(sender),
            interpreted.ticket_number,
            interpreted.body[:40],
        )
        return InboundOutcome(OUTCOME_UNMATCHED)

    message = _persist_inbound(interpreted, sender or "", provider_message_id, recipient)
    outcome = InboundOutcome(
        ACTION_NONE,
        ticket_id=ticket.id,
        message_id=message.id,
        matched_by=interpreted.match.matched_by,
    )

    duplicate_of = (message.message_metadata or {}).get("duplicate_of")
    if duplicate_of is not None:
        logger.info("Inbound message %s repeats message %s; no automation", message.id, duplicate_of)
        outcome.action = OUTCOME_DUPLICATE
        outcome.duplicate_of = duplicate_of
        return outcome

    try:
        applied = run_with_retry(lambda: _decide_and_apply(ticket.id, interpreted.intent))
    except ValetError as e:
        db.session.rollback()
        logger.exception("Automation for ticket %s failed: %s", ticket.ticket_number, e.message)
        outcome.reason = e.message
        return outcome

    outcome.action = applied.decision.action
    outcome.reason = applied.decision.reason
    logger.info(
        "Inbound automation for ticket %s: %s (%s)",
        ticket.ticket_number,
        applied.decision.action,
        applied.decision.reason,
    )
    _follow_up(db.session.get(Ticket, ticket.id), applied, outcome)
    return outcome


def _persist_inbound(interpreted: InterpretedMessage, sender: str, provider_message_id, recipient):
    ticket = interpreted.ticket
    now = utcnow()
    duplicate = message_service.find_duplicate_inbound(
        ticket,
        body=interpreted.body,
        sender=sender,
        provider_message_id=provider_message_id,
        now=now,
        window_seconds=current_app.config.get("INBOUND_DUPLICATE_WINDOW_SECONDS", 120),
    )
    message = message_service.record_inbound(
        ticket,
        body=interpreted.body,
        sender=sender,
        provider_message_id=provider_message_id,
        duplicate_of=duplicate.id if duplicate else None,
        extra={
            "to": recipient,
            "matched_by": interpreted.match.matched_by,
            "ticket_number_token": interpreted.ticket_number,
            "intent": interpreted.intent.to_dict(),
        },
        received_at=now,
    )
    db.session.commit()
    return message


def _decide_and_apply(ticket_id: int, intent: MessageIntent) -> _Applied:
    ticket = lock_for_update(db.session.query(Ticket).filter(Ticket.id == ticket_id)).first()
    now = utcnow()
    schedule = PricingSchedule.from_location(ticket.location)
    ledger = ledger_service.snapshot(ticket, now=now, schedule=schedule)
    in_out_allowed = ticket_has_in_out_privileges(ticket, schedule)

    decision = decide_action(
        status=ticket.status,
        vehicle_status=ticket.vehicle_status,
        will_return=ticket.will_return,
        in_out_allowed=in_out_allowed,
        settled=ledger.is_settled,
        intent=intent,
    )

    if decision.action == ACTION_RECORD_RETURN:
        ticket.will_return = decision.will_return
        append_audit_event(
            action=TICKET_UPDATED,
            ticket_id=ticket.id,
            details={
                "ticket_number": ticket.ticket_number,
                "changes": {"will_return": {"from": None, "to": decision.will_return}},
                "source": "customer_sms",
            },
            occurred_at=now,
        )
        db.session.commit()
        return _Applied(decision)

    if decision.action == ACTION_MARK_READY:
        apply_transition(
            ticket,
            status=STATUS_READY_FOR_PICKUP,
            reason=decision.reason,
            now=now,
            schedule=schedule,
        )
        ask = in_out_allowed and ticket.will_return is None
        db.session.commit()
        return _Applied(decision, ask_return_question=ask)

    if decision.action == ACTION_NOTE:
        append_audit_event(
            action=AUTOMATION_NOTE,
            ticket_id=ticket.id,
            details={
                "ticket_number": ticket.ticket_number,
                "note": decision.reason,
                "intent": intent.to_dict(),
                "outstanding_cents": ledger.outstanding_cents,
            },
            occurred_at=now,
        )
        db.session.commit()
        return _Applied(decision)

    # Payment links run their own claim; nothing else changes here
    db.session.rollback()
    return _Applied(decision)


def _notify(ticket: Ticket, body: str, reason: str, outcome: InboundOutcome) -> None:
    if not get_providers().capabilities.can_send_sms:
        logger.warning("SMS unavailable; %s not sent for ticket %s", reason, ticket.ticket_number)
        return
    if message_service.notify_customer(ticket, body, reason=reason) is not None:
        outcome.notifications.append(reason)


def _follow_up(ticket: Ticket, applied: _Applied, outcome: InboundOutcome) -> None:
    """Customer-facing side effects after the decision has been committed."""
    action = applied.decision.action

    if action == ACTION_RECORD_RETURN:
        body = RETURN_YES_ACK if applied.decision.will_return else RETURN_NO_ACK
        _notify(ticket, body, message_service.REASON_RETURN_ACK, outcome)

    elif action == ACTION_MARK_READY:
        _notify(
            ticket,
            f"Thanks {ticket.customer_name}! Your car is being prepared for pickup. "
            f"We'll have ticket {ticket.ticket_number} ready shortly.",
            message_service.REASON_PICKUP_ACK,
            outcome,
        )
        if applied.ask_return_question:
            _notify(ticket, RETURN_QUESTION, message_service.REASON_RETURN_QUESTION, outcome)

    elif action == ACTION_SEND_PAYMENT_LINK:
        result = payment_service.issue_payment_link(
            ticket.id,
            reason=applied.decision.reason,
            automated=True,
            raise_on_failure=False,
        )
        if result.sent:
            outcome.notifications.append(message_service.REASON_PAYMENT_REQUEST)
        elif result.error:
            outcome.reason = result.error
