# Overview: Payment ledger for tickets; derives paid/outstanding balances and applies refunds.

"""
Ticket Payment Ledger

WHY: Every payment-gated decision (ready for pickup, completion, vehicle
departure, automated payment links) reads the same three numbers:

    amount_paid  = sum(amount_cents) over COMPLETED payments
    outstanding  = max(0, projected - amount_paid)
    is_settled   = outstanding == 0

projected comes from the pricing engine for a single reference time.

Refunds are recorded on the Payment row itself: refund_amount_cents only
grows, and the payment becomes REFUNDED exactly when it equals
amount_cents. A partially refunded payment stays COMPLETED and still
counts toward amount_paid at its full amount, matching how the balance was
settled at the time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..errors import InvalidRefundAmountError
from ..models.payments import (
    OPEN_PAYMENT_STATUSES,
    PAYMENT_COMPLETED,
    PAYMENT_REFUNDED,
)
from ..time_utils import utcnow
from .pricing_service import PricingSchedule, calculate_projected_amount_cents


@dataclass(frozen=True)
class LedgerSnapshot:
    projected_cents: int
    amount_paid_cents: int

    @property
    def outstanding_cents(self) -> int:
        return max(0, self.projected_cents - self.amount_paid_cents)

    @property
    def is_settled(self) -> bool:
        return self.outstanding_cents == 0

    def to_dict(self) -> dict:
        return {
            "projected_amount_cents": self.projected_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "outstanding_amount_cents": self.outstanding_cents,
            "payment_complete": self.is_settled,
        }


def amount_paid_cents(payments: Iterable) -> int:
    return sum(p.amount_cents for p in payments if p.status == PAYMENT_COMPLETED)


def outstanding_cents(projected_cents: int, paid_cents: int) -> int:
    return max(0, projected_cents - paid_cents)


def snapshot(
    ticket,
    *,
    now: Optional[datetime] = None,
    schedule: Optional[PricingSchedule] = None,
) -> LedgerSnapshot:
    """Ledger view of `ticket` (its payments must be loaded/current)."""
    projected = calculate_projected_amount_cents(ticket, now=now, schedule=schedule)
    return LedgerSnapshot(projected_cents=projected, amount_paid_cents=amount_paid_cents(ticket.payments))


def is_settled(ticket, *, now: Optional[datetime] = None) -> bool:
    return snapshot(ticket, now=now).is_settled


def open_payments(ticket) -> list:
    """Links requested but not yet paid, newest first."""
    rows = [p for p in ticket.payments if p.status in OPEN_PAYMENT_STATUSES]
    return sorted(rows, key=lambda p: (p.created_at, p.id or 0), reverse=True)


# =============================================================================
# REFUNDS
# =============================================================================

def validate_refund(payment, amount_cents: Optional[int]) -> int:
    """
    Resolve and validate a refund request; returns the amount to refund.

    amount_cents=None means "refund whatever is left".
    """
    remaining = payment.refundable_cents

    if payment.status != PAYMENT_COMPLETED:
        raise InvalidRefundAmountError(
            f"Only completed payments can be refunded (payment is {payment.status}).",
            refundable_cents=0 if payment.status == PAYMENT_REFUNDED else remaining,
        )

    if amount_cents is None:
        amount_cents = remaining

    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidRefundAmountError("Refund amount must be a positive integer number of cents.", refundable_cents=remaining)

    if amount_cents > remaining:
        raise InvalidRefundAmountError(
            f"Cannot refund more than ${remaining / 100:.2f}. "
            f"${(payment.refund_amount_cents or 0) / 100:.2f} has already been refunded.",
            refundable_cents=remaining,
        )
    return amount_cents


def apply_refund(payment, amount_cents: Optional[int], *, refunded_at: Optional[datetime] = None) -> int:
    """
    Record a refund on `payment` in memory; the caller commits.

    Returns the amount applied. Sets refunded_at on the first refund and
    moves the payment to REFUNDED only once fully refunded.
    """
    amount = validate_refund(payment, amount_cents)
    when = refunded_at or utcnow()

    payment.refund_amount_cents = (payment.refund_amount_cents or 0) + amount
    if payment.refunded_at is None:
        payment.refunded_at = when
    if payment.refund_amount_cents == payment.amount_cents:
        payment.status = PAYMENT_REFUNDED
    return amount
