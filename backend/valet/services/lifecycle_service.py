# Overview: Ticket state machine; enforces legal and payment-gated status transitions.

"""
Valet Ticket Lifecycle Service

================================================================================
PURPOSE: Single owner of every change to Ticket.status / Ticket.vehicle_status
================================================================================

STATE MACHINE (status):
    CHECKED_IN <-> READY_FOR_PICKUP -> COMPLETED
    CHECKED_IN / READY_FOR_PICKUP -> CANCELLED

    COMPLETED and CANCELLED are terminal.

VEHICLE AXIS (independent):
    WITH_US <-> AWAY

RULES (NON-NEGOTIABLE):
1. -> READY_FOR_PICKUP and -> COMPLETED require a settled ledger
   (PaymentRequiredError carries the outstanding amount).
2. WITH_US -> AWAY requires in/out privileges AND a settled ledger
   (SettlementRequiredBeforeDepartureError).
3. A vehicle that leaves while READY_FOR_PICKUP drops back to CHECKED_IN.
4. Gates are evaluated against the billing facts the ticket will have after
   the change, in the caller's transaction; the caller commits or rolls
   back the whole update.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..errors import (
    ConflictError,
    PaymentRequiredError,
    SettlementRequiredBeforeDepartureError,
    ValidationError,
)
from ..models.tickets import (
    STATUS_CANCELLED,
    STATUS_CHECKED_IN,
    STATUS_COMPLETED,
    STATUS_READY_FOR_PICKUP,
    VALID_TICKET_STATUSES,
    VALID_VEHICLE_STATUSES,
    VEHICLE_AWAY,
)
from ..time_utils import utcnow
from . import ledger_service
from .audit_service import STATUS_CHANGED, VEHICLE_STATUS_CHANGED, append_audit_event
from .pricing_service import PricingSchedule, ticket_has_in_out_privileges


PAYMENT_GATED_STATUSES = {STATUS_READY_FOR_PICKUP, STATUS_COMPLETED}
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_CANCELLED}

_VALID_TRANSITIONS = {
    (STATUS_CHECKED_IN, STATUS_READY_FOR_PICKUP),
    (STATUS_CHECKED_IN, STATUS_COMPLETED),
    (STATUS_CHECKED_IN, STATUS_CANCELLED),
    (STATUS_READY_FOR_PICKUP, STATUS_CHECKED_IN),
    (STATUS_READY_FOR_PICKUP, STATUS_COMPLETED),
    (STATUS_READY_FOR_PICKUP, STATUS_CANCELLED),
}


class LifecycleError(ConflictError):
    """An illegal (not merely unpaid) ticket transition was attempted."""


def validate_status(status: str) -> None:
    if status not in VALID_TICKET_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_TICKET_STATUSES))}"
        )


def validate_vehicle_status(vehicle_status: str) -> None:
    if vehicle_status not in VALID_VEHICLE_STATUSES:
        raise ValidationError(
            f"Invalid vehicle_status '{vehicle_status}'. Must be one of: {', '.join(sorted(VALID_VEHICLE_STATUSES))}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    """Same-state is a no-op and always allowed."""
    validate_status(from_status)
    validate_status(to_status)
    if from_status == to_status:
        return True
    return (from_status, to_status) in _VALID_TRANSITIONS


@dataclass(frozen=True)
class TransitionPlan:
    status: str
    vehicle_status: str
    reverted_to_checked_in: bool = False

    def changes_from(self, ticket) -> dict:
        changes = {}
        if self.status != ticket.status:
            changes["status"] = self.status
        if self.vehicle_status != ticket.vehicle_status:
            changes["vehicle_status"] = self.vehicle_status
        return changes


def plan_transition(
    ticket,
    *,
    status: Optional[str] = None,
    vehicle_status: Optional[str] = None,
    ledger: ledger_service.LedgerSnapshot,
    in_out_allowed: bool,
) -> TransitionPlan:
    """
    Decide the resulting (status, vehicle_status) or raise.

    Pure: reads the ticket and the supplied ledger snapshot, mutates nothing.
    """
    target_status = status if status is not None else ticket.status
    target_vehicle = vehicle_status if vehicle_status is not None else ticket.vehicle_status
    validate_status(target_status)
    validate_vehicle_status(target_vehicle)

    if ticket.status in TERMINAL_STATUSES and (
        target_status != ticket.status or target_vehicle != ticket.vehicle_status
    ):
        raise LifecycleError(f"Ticket {ticket.ticket_number} is {ticket.status} and can no longer change.")

    if not can_transition(ticket.status, target_status):
        raise LifecycleError(f"Cannot change ticket status from {ticket.status} to {target_status}.")

    leaving = target_vehicle == VEHICLE_AWAY and ticket.vehicle_status != VEHICLE_AWAY
    if leaving and (not in_out_allowed or not ledger.is_settled):
        raise SettlementRequiredBeforeDepartureError(
            outstanding_cents=ledger.outstanding_cents,
            in_out_allowed=in_out_allowed,
        )

    reverted = False
    if leaving and target_status == STATUS_READY_FOR_PICKUP:
        # A vehicle that leaves again is no longer waiting at the curb
        target_status = STATUS_CHECKED_IN
        reverted = True

    if target_status != ticket.status and target_status in PAYMENT_GATED_STATUSES and not ledger.is_settled:
        raise PaymentRequiredError(outstanding_cents=ledger.outstanding_cents)

    return TransitionPlan(status=target_status, vehicle_status=target_vehicle, reverted_to_checked_in=reverted)


def apply_transition(
    ticket,
    *,
    status: Optional[str] = None,
    vehicle_status: Optional[str] = None,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    record_audit: bool = True,
    schedule: Optional[PricingSchedule] = None,
) -> dict:
    """
    Evaluate gates against the ticket's current billing facts and apply.

    Returns {field: new_value} for what changed. Does not commit. With
    record_audit=False the caller is responsible for the audit entry (the
    staff PATCH path folds these into one TICKET_UPDATED diff).
    """
    now = now or utcnow()
    if schedule is None:
        schedule = PricingSchedule.from_location(ticket.location)
    ledger = ledger_service.snapshot(ticket, now=now, schedule=schedule)
    in_out_allowed = ticket_has_in_out_privileges(ticket, schedule)

    plan = plan_transition(
        ticket,
        status=status,
        vehicle_status=vehicle_status,
        ledger=ledger,
        in_out_allowed=in_out_allowed,
    )
    changes = plan.changes_from(ticket)
    if not changes:
        return {}

    previous_status = ticket.status
    previous_vehicle = ticket.vehicle_status
    ticket.status = plan.status
    ticket.vehicle_status = plan.vehicle_status

    if plan.status == STATUS_COMPLETED and ticket.check_out_time is None:
        ticket.check_out_time = now
        changes["check_out_time"] = now

    if record_audit:
        details = {
            "ticket_number": ticket.ticket_number,
            "reason": reason,
            "outstanding_cents": ledger.outstanding_cents,
            "will_return": ticket.will_return,
        }
        if "status" in changes:
            append_audit_event(
                action=STATUS_CHANGED,
                ticket_id=ticket.id,
                actor=actor,
                details={
                    **details,
                    "old_status": previous_status,
                    "new_status": plan.status,
                    "reverted_because_vehicle_left": plan.reverted_to_checked_in,
                },
                occurred_at=now,
            )
        if "vehicle_status" in changes:
            append_audit_event(
                action=VEHICLE_STATUS_CHANGED,
                ticket_id=ticket.id,
                actor=actor,
                details={**details, "old_vehicle_status": previous_vehicle, "new_vehicle_status": plan.vehicle_status},
                occurred_at=now,
            )

    return changes
