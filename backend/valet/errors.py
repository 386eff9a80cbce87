# Overview: Domain error taxonomy shared by services and routes.

from __future__ import annotations


class ValetError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def payload(self) -> dict:
        return {"error": self.message, **self.details}


class ValidationError(ValetError):
    """400-level input problem. Raised before any side effect."""


class NotFoundError(ValetError):
    status_code = 404


class ConflictError(ValetError):
    """409-level business rule conflict (e.g., ticket number already open)."""

    status_code = 409


class PermissionDeniedError(ValetError):
    status_code = 403


class PaymentRequiredError(ValetError):
    """Ticket cannot move to READY_FOR_PICKUP / COMPLETED with a balance due."""

    status_code = 402

    def __init__(self, outstanding_cents: int, message: str | None = None):
        super().__init__(
            message or "Payment required before changing status to Ready or Completed.",
            outstanding_cents=outstanding_cents,
        )
        self.outstanding_cents = outstanding_cents


class SettlementRequiredBeforeDepartureError(ValetError):
    """Vehicle cannot leave the lot (WITH_US -> AWAY) under current policy."""

    status_code = 402

    def __init__(self, outstanding_cents: int, in_out_allowed: bool, message: str | None = None):
        if message is None:
            if not in_out_allowed:
                message = "This ticket does not have in/out privileges; the vehicle cannot leave and return."
            else:
                message = "Outstanding balances must be paid before the vehicle can leave."
        super().__init__(message, outstanding_cents=outstanding_cents, in_out_allowed=in_out_allowed)
        self.outstanding_cents = outstanding_cents
        self.in_out_allowed = in_out_allowed


class InvalidRefundAmountError(ValetError):
    def __init__(self, message: str, refundable_cents: int):
        super().__init__(message, refundable_cents=refundable_cents)
        self.refundable_cents = refundable_cents


class ProviderUnavailableError(ValetError):
    """SMS or payment-link provider is misconfigured, disabled or erroring."""

    status_code = 503

    def __init__(self, provider: str, message: str):
        super().__init__(message, provider=provider)
        self.provider = provider
