# Overview: Payment link issuance, provider webhook completion and refunds for tickets.

"""
Valet Payment Service

================================================================================
PAYMENT LINK FLOW
================================================================================
1. Claim (locked, retried on conflict):
   - outstanding balance from the ledger; nothing to do when settled
   - an open payment for the same amount that already has a link is reused
     (its URL is re-sent instead of creating a second link)
   - a PENDING row without a link that is younger than
     PENDING_LINK_STALE_SECONDS means another request is mid-flight: stop
   - otherwise insert a PENDING row and commit it
2. Ask the provider for the link (outside any lock/retry). Failure -> the
   claimed row becomes FAILED.
3. Store link id/url and commit, so a webhook can always find the row.
4. Text the link. Only after the provider accepted the text does the row
   become PAYMENT_LINK_SENT (with its audit entry).

Staff-triggered issuance surfaces ProviderUnavailableError. Automation
passes raise_on_failure=False: the failure is logged and reported in the
result, never raised.

================================================================================
WEBHOOK COMPLETION
================================================================================
checkout.session.completed with payment_status "paid" resolves the payment
by its stored link id (the checkout session id), falling back to the most
recent open payment for the ticket in the event metadata. Redelivered
events find an already COMPLETED row and do nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app

from ..errors import NotFoundError, ProviderUnavailableError, ValetError, ValidationError
from ..extensions import db
from ..models import Payment, Ticket
from ..models.payments import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_LINK_SENT,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    VALID_PAYMENT_STATUSES,
)
from ..time_utils import utcnow
from . import ledger_service, message_service
from .audit_service import PAYMENT_COMPLETED as AUDIT_PAYMENT_COMPLETED
from .audit_service import PAYMENT_LINK_SENT as AUDIT_PAYMENT_LINK_SENT
from .audit_service import PAYMENT_REFUNDED as AUDIT_PAYMENT_REFUNDED
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .pricing_service import PricingSchedule, format_cents
from .providers import PAYMENT_PROVIDER, SMS_PROVIDER, get_providers


logger = logging.getLogger(__name__)

LINK_CREATED = "created"
LINK_RESENT = "resent"
LINK_IN_FLIGHT = "in_flight"
LINK_NOT_NEEDED = "settled"
LINK_FAILED = "failed"


@dataclass(frozen=True)
class PaymentLinkResult:
    action: str
    payment: Optional[Payment] = None
    amount_cents: int = 0
    error: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.action in (LINK_CREATED, LINK_RESENT)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "amount_cents": self.amount_cents,
            "payment": self.payment.to_dict() if self.payment else None,
            "error": self.error,
        }


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


def _locked_ticket(ticket_id: int) -> Ticket:
    ticket = lock_for_update(db.session.query(Ticket).filter(Ticket.id == ticket_id)).first()
    if not ticket:
        raise NotFoundError("Ticket not found")
    return ticket


def payment_link_message(ticket: Ticket, amount_cents: int, url: str, lead: Optional[str] = None) -> str:
    brand = current_app.config.get("BRAND_NAME", "ValetPro")
    if lead is None:
        lead = (
            f"Thanks {ticket.customer_name}! To request your car for ticket {ticket.ticket_number}, "
            f"please complete your payment of {format_cents(amount_cents)}."
        )
    return f"{lead}\nTotal due: {format_cents(amount_cents)}\nPay here: {url}\n- {brand}"


# =============================================================================
# LINK ISSUANCE
# =============================================================================

@dataclass(frozen=True)
class _Claim:
    action: str
    payment_id: Optional[int] = None
    amount_cents: int = 0


def _claim_link(ticket_id: int, amount_cents: Optional[int], *, reason: str, automated: bool, actor: Optional[str]) -> _Claim:
    def _claim() -> _Claim:
        now = utcnow()
        ticket = _locked_ticket(ticket_id)
        if not ticket.is_open:
            raise ValidationError(f"Ticket {ticket.ticket_number} is {ticket.status}; no payment can be requested.")

        ledger = ledger_service.snapshot(ticket, now=now, schedule=PricingSchedule.from_location(ticket.location))
        amount = ledger.outstanding_cents if amount_cents is None else amount_cents
        if amount <= 0:
            db.session.rollback()
            return _Claim(LINK_NOT_NEEDED)

        stale_after = timedelta(seconds=current_app.config.get("PENDING_LINK_STALE_SECONDS", 300))
        for payment in ledger_service.open_payments(ticket):
            if payment.amount_cents != amount:
                continue
            if payment.link_url:
                db.session.rollback()
                return _Claim(LINK_RESENT, payment.id, amount)
            if payment.status == PAYMENT_PENDING and now - payment.created_at < stale_after:
                db.session.rollback()
                return _Claim(LINK_IN_FLIGHT, payment.id, amount)

        payment = Payment(
            ticket_id=ticket.id,
            amount_cents=amount,
            status=PAYMENT_PENDING,
            created_at=now,
            payment_metadata={"reason": reason, "automated": automated, "initiated_by": actor},
        )
        db.session.add(payment)
        # Bumps ticket.version_id so a concurrent claim fails its flush and re-reads
        ticket.updated_at = now
        db.session.commit()
        return _Claim(LINK_CREATED, payment.id, amount)

    return run_with_retry(_claim)


def _mark_failed(payment_id: int, error: str) -> Payment:
    payment = db.session.get(Payment, payment_id)
    payment.status = PAYMENT_FAILED
    payment.payment_metadata = {**(payment.payment_metadata or {}), "error": error}
    db.session.commit()
    return payment


def _text_link(payment: Payment, ticket: Ticket, *, reason: str, automated: bool, actor: Optional[str],
               lead: Optional[str]) -> None:
    """Deliver the link and flip the row to PAYMENT_LINK_SENT. Raises on SMS failure."""
    body = payment_link_message(ticket, payment.amount_cents, payment.link_url, lead)
    message_service.deliver(
        ticket,
        body,
        reason=reason,
        automated=automated,
        actor=actor,
        extra_metadata={"payment_id": payment.id, "amount_cents": payment.amount_cents},
    )
    payment.status = PAYMENT_LINK_SENT
    append_audit_event(
        action=AUDIT_PAYMENT_LINK_SENT,
        ticket_id=ticket.id,
        actor=actor,
        details={
            "payment_id": payment.id,
            "ticket_number": ticket.ticket_number,
            "amount_cents": payment.amount_cents,
            "reason": reason,
            "automated": automated,
            "provider_link_id": payment.provider_link_id,
        },
    )
    db.session.commit()


def issue_payment_link(
    ticket_id: int,
    *,
    amount_cents: Optional[int] = None,
    reason: str = message_service.REASON_PAYMENT_REQUEST,
    automated: bool = True,
    actor: Optional[str] = None,
    lead: Optional[str] = None,
    raise_on_failure: bool = False,
) -> PaymentLinkResult:
    """
    Create (or reuse) a payment link for the ticket and text it to the customer.

    amount_cents=None charges the current outstanding balance.
    """
    caps = get_providers().capabilities
    if not caps.can_create_payment_links or not caps.can_send_sms:
        provider = PAYMENT_PROVIDER if not caps.can_create_payment_links else SMS_PROVIDER
        error = ProviderUnavailableError(provider, "Payment links need both the payment and SMS providers.")
        if raise_on_failure:
            raise error
        logger.warning("Skipping payment link for ticket %s: %s", ticket_id, error.message)
        return PaymentLinkResult(LINK_FAILED, error=error.message)

    claim = _claim_link(ticket_id, amount_cents, reason=reason, automated=automated, actor=actor)
    if claim.action in (LINK_NOT_NEEDED, LINK_IN_FLIGHT):
        logger.info("No payment link sent for ticket %s (%s)", ticket_id, claim.action)
        payment = db.session.get(Payment, claim.payment_id) if claim.payment_id else None
        return PaymentLinkResult(claim.action, payment, claim.amount_cents)

    payment = db.session.get(Payment, claim.payment_id)
    ticket = payment.ticket

    if claim.action == LINK_CREATED:
        try:
            link = get_providers().payments.create_link(
                amount_cents=payment.amount_cents,
                description=f"Valet ticket {ticket.ticket_number} ({ticket.location.name})",
                metadata={
                    "ticket_id": ticket.id,
                    "payment_id": payment.id,
                    "ticket_number": ticket.ticket_number,
                    "reason": reason,
                },
            )
        except ValetError as e:
            _mark_failed(payment.id, e.message)
            if raise_on_failure:
                raise
            logger.exception("Payment link creation failed for ticket %s", ticket.ticket_number)
            return PaymentLinkResult(LINK_FAILED, payment, claim.amount_cents, e.message)

        payment.provider_link_id = link.link_id
        payment.link_url = link.url
        db.session.commit()

    try:
        _text_link(payment, ticket, reason=reason, automated=automated, actor=actor, lead=lead)
    except ValetError as e:
        # The link exists; leave the row open so the next request re-sends it
        db.session.rollback()
        if raise_on_failure:
            raise
        logger.exception("Payment link SMS failed for ticket %s", ticket.ticket_number)
        return PaymentLinkResult(LINK_FAILED, payment, claim.amount_cents, e.message)

    logger.info(
        "Payment link %s for ticket %s: %s",
        claim.action,
        ticket.ticket_number,
        format_cents(payment.amount_cents),
    )
    return PaymentLinkResult(claim.action, payment, claim.amount_cents)


def create_link_for_ticket(
    ticket_id: int,
    *,
    amount_cents: Optional[int] = None,
    message: Optional[str] = None,
    actor: Optional[str] = None,
) -> PaymentLinkResult:
    """Staff-requested link; defaults to the outstanding balance."""
    if amount_cents is not None:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError("amount_cents must be a positive integer")

    result = issue_payment_link(
        ticket_id,
        amount_cents=amount_cents,
        reason=message_service.REASON_PAYMENT_REQUEST,
        automated=False,
        actor=actor,
        lead=(message or "").strip() or None,
        raise_on_failure=True,
    )
    if result.action == LINK_NOT_NEEDED:
        raise ValidationError("Ticket has no outstanding balance.")
    return result


# =============================================================================
# PROVIDER WEBHOOK
# =============================================================================

def _metadata_ticket_id(metadata: dict) -> Optional[int]:
    raw = (metadata or {}).get("ticket_id") or (metadata or {}).get("ticketId")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def handle_provider_event(event: dict) -> dict:
    """Dispatch a verified webhook envelope; returns a small summary for the response."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") != "paid":
            logger.info("Checkout session %s not paid (%s); ignoring", obj.get("id"), obj.get("payment_status"))
            return {"handled": False, "reason": "not_paid"}
        payment = complete_checkout_session(
            session_id=obj.get("id"),
            ticket_id=_metadata_ticket_id(obj.get("metadata")),
            payment_intent_id=obj.get("payment_intent"),
            customer_id=obj.get("customer"),
        )
        return {"handled": payment is not None, "payment_id": payment.id if payment else None}

    if event_type == "payment_intent.succeeded":
        # Checkout-based links are completed through checkout.session.completed
        logger.info("payment_intent.succeeded %s acknowledged", obj.get("id"))
        return {"handled": False, "reason": "handled_by_checkout_session"}

    logger.info("Unhandled payment webhook event type: %s", event_type)
    return {"handled": False, "reason": "unhandled_event_type"}


def complete_checkout_session(
    *,
    session_id: Optional[str],
    ticket_id: Optional[int],
    payment_intent_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> Optional[Payment]:
    """Mark the matching payment COMPLETED exactly once; then confirm by SMS (best-effort)."""

    def _complete():
        payment = None
        if session_id:
            payment = lock_for_update(
                db.session.query(Payment).filter(Payment.provider_link_id == session_id)
            ).first()
            if payment and payment.status in (PAYMENT_COMPLETED, PAYMENT_REFUNDED):
                db.session.rollback()
                return None, False

        if payment is None or payment.status not in (PAYMENT_PENDING, PAYMENT_LINK_SENT):
            if ticket_id is None:
                return None, False
            already = [
                p for p in db.session.query(Payment).filter(Payment.ticket_id == ticket_id).all()
                if session_id and (p.payment_metadata or {}).get("checkout_session_id") == session_id
            ]
            if already:
                db.session.rollback()
                return None, False
            payment = lock_for_update(
                db.session.query(Payment)
                .filter(
                    Payment.ticket_id == ticket_id,
                    Payment.status.in_((PAYMENT_PENDING, PAYMENT_LINK_SENT)),
                )
                .order_by(Payment.created_at.desc(), Payment.id.desc())
            ).first()
            if payment is None:
                return None, False

        now = utcnow()
        payment.status = PAYMENT_COMPLETED
        payment.completed_at = now
        payment.payment_metadata = {
            **(payment.payment_metadata or {}),
            "checkout_session_id": session_id,
            "payment_intent_id": payment_intent_id,
            "customer_id": customer_id,
            "completed_via": "webhook",
        }
        append_audit_event(
            action=AUDIT_PAYMENT_COMPLETED,
            ticket_id=payment.ticket_id,
            details={
                "payment_id": payment.id,
                "ticket_number": payment.ticket.ticket_number,
                "amount_cents": payment.amount_cents,
                "checkout_session_id": session_id,
                "completed_via": "webhook",
            },
            occurred_at=now,
        )
        db.session.commit()
        return payment, True

    payment, completed = run_with_retry(_complete)
    if not completed:
        logger.info("Checkout session %s: no open payment to complete (ticket %s)", session_id, ticket_id)
        return None

    ticket = payment.ticket
    logger.info("Payment %s completed for ticket %s", payment.id, ticket.ticket_number)
    if ticket.is_open and get_providers().capabilities.can_send_sms:
        message_service.notify_customer(
            ticket,
            f"Payment confirmed! You paid {format_cents(payment.amount_cents)} for ticket "
            f"{ticket.ticket_number}. Reply YES to request your car now.",
            reason=message_service.REASON_PAYMENT_CONFIRMATION,
            extra_metadata={"payment_id": payment.id},
        )
    return payment


# =============================================================================
# REFUNDS
# =============================================================================

def refund_payment(
    payment_id: int,
    *,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
) -> Payment:
    """
    Refund all or part of a completed payment.

    The provider refund happens first; a provider failure leaves the local
    ledger untouched. amount_cents=None refunds the remaining balance.
    """
    payment = get_payment(payment_id)
    amount = ledger_service.validate_refund(payment, amount_cents)

    gateway = get_providers().payments
    if not get_providers().capabilities.can_create_payment_links:
        raise ProviderUnavailableError(PAYMENT_PROVIDER, "Payment provider is not configured; cannot refund.")

    intent_id = (payment.payment_metadata or {}).get("payment_intent_id")
    if not intent_id and payment.provider_link_id:
        intent_id = gateway.resolve_payment_intent(payment.provider_link_id)
    if not intent_id:
        raise ProviderUnavailableError(PAYMENT_PROVIDER, "No provider payment found to refund.")

    refund = gateway.refund(
        payment_intent_id=intent_id,
        amount_cents=amount,
        metadata={"ticket_id": payment.ticket_id, "payment_id": payment.id, "reason": reason},
    )

    def _apply():
        locked = lock_for_update(db.session.query(Payment).filter(Payment.id == payment_id)).first()
        now = utcnow()
        applied = ledger_service.apply_refund(locked, amount, refunded_at=now)
        locked.provider_refund_id = refund.refund_id
        metadata = dict(locked.payment_metadata or {})
        metadata["payment_intent_id"] = intent_id
        metadata["refunds"] = list(metadata.get("refunds") or []) + [{
            "refund_id": refund.refund_id,
            "amount_cents": applied,
            "reason": reason,
            "refunded_by": actor,
            "refunded_at": now.isoformat(),
        }]
        locked.payment_metadata = metadata
        append_audit_event(
            action=AUDIT_PAYMENT_REFUNDED,
            ticket_id=locked.ticket_id,
            actor=actor,
            details={
                "payment_id": locked.id,
                "ticket_number": locked.ticket.ticket_number,
                "refund_amount_cents": applied,
                "total_refunded_cents": locked.refund_amount_cents,
                "fully_refunded": locked.status == PAYMENT_REFUNDED,
                "provider_refund_id": refund.refund_id,
                "reason": reason,
            },
            occurred_at=now,
        )
        db.session.commit()
        return locked

    try:
        payment = run_with_retry(_apply)
    except ValetError:
        logger.error("Provider refund %s succeeded but local ledger rejected it (payment %s)", refund.refund_id, payment_id)
        raise

    if get_providers().capabilities.can_send_sms:
        ticket = payment.ticket
        message_service.notify_customer(
            ticket,
            f"A refund of {format_cents(amount)} for ticket {ticket.ticket_number} has been issued. "
            f"It may take 5-10 business days to appear.",
            reason=message_service.REASON_REFUND_CONFIRMATION,
            actor=actor,
            extra_metadata={"payment_id": payment.id, "refund_amount_cents": amount},
        )
    return payment


# =============================================================================
# LISTING
# =============================================================================

def list_payments(
    *,
    status: Optional[str] = None,
    location_id: Optional[int] = None,
    ticket_id: Optional[int] = None,
    limit: int = 500,
) -> list[Payment]:
    query = db.session.query(Payment).join(Ticket, Ticket.id == Payment.ticket_id)
    if status:
        if status not in VALID_PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status '{status}'")
        query = query.filter(Payment.status == status)
    if location_id is not None:
        query = query.filter(Ticket.location_id == location_id)
    if ticket_id is not None:
        query = query.filter(Payment.ticket_id == ticket_id)
    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()


def payment_metrics(payments: list[Payment]) -> dict:
    completed = [p for p in payments if p.status == PAYMENT_COMPLETED]
    pending = [p for p in payments if p.status in (PAYMENT_PENDING, PAYMENT_LINK_SENT)]
    refunded = [p for p in payments if (p.refund_amount_cents or 0) > 0]
    return {
        "total": len(payments),
        "completed_count": len(completed),
        "completed_amount_cents": sum(p.amount_cents for p in completed),
        "pending_count": len(pending),
        "pending_amount_cents": sum(p.amount_cents for p in pending),
        "refunded_count": len(refunded),
        "refunded_amount_cents": sum(p.refund_amount_cents or 0 for p in refunded),
        "failed_count": sum(1 for p in payments if p.status == PAYMENT_FAILED),
    }
