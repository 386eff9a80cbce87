# Overview: SMS and payment-link provider gateways plus the capability flags gating them.

"""
External Provider Gateways

WHY: Automation decides between "send a payment link" and "send a welcome
text" based on which providers are usable. Those facts live in one frozen
ProviderCapabilities value built from config at startup, instead of
module-level globals, so tests can install fakes and simulate an
unavailable provider deterministically.

DESIGN:
- TwilioSmsGateway: POST to the Twilio Messages REST endpoint with httpx,
  basic auth, one attempt bounded by PROVIDER_TIMEOUT_SECONDS.
- StripePaymentGateway: Checkout Sessions for hosted payment links,
  Refunds, and webhook signature verification.
- Every transport/provider failure becomes ProviderUnavailableError. No
  automatic retries: a retried link request could bill the customer twice.

The bundle lives in app.extensions["valet.providers"].
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import stripe
from flask import current_app

from ..errors import ProviderUnavailableError, ValidationError
from .phone_service import mask_phone, normalize_phone


logger = logging.getLogger(__name__)

EXTENSION_KEY = "valet.providers"
TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

SMS_PROVIDER = "sms"
PAYMENT_PROVIDER = "payments"


@dataclass(frozen=True)
class ProviderCapabilities:
    sms_configured: bool
    sms_disabled: bool
    payments_configured: bool
    webhook_secret_configured: bool = False

    @property
    def can_send_sms(self) -> bool:
        return self.sms_configured and not self.sms_disabled

    @property
    def can_create_payment_links(self) -> bool:
        return self.payments_configured

    @property
    def can_automate_payments(self) -> bool:
        """A link nobody can text to the customer is useless to automation."""
        return self.can_send_sms and self.can_create_payment_links

    def to_dict(self) -> dict:
        return {
            "sms_configured": self.sms_configured,
            "sms_disabled": self.sms_disabled,
            "can_send_sms": self.can_send_sms,
            "payments_configured": self.payments_configured,
            "webhook_secret_configured": self.webhook_secret_configured,
        }

    @classmethod
    def from_config(cls, config) -> "ProviderCapabilities":
        return cls(
            sms_configured=bool(
                config.get("TWILIO_SID") and config.get("TWILIO_AUTH") and config.get("TWILIO_FROM_NUMBER")
            ),
            sms_disabled=bool(config.get("DISABLE_SMS_SENDING")),
            payments_configured=bool(config.get("STRIPE_SECRET_KEY")),
            webhook_secret_configured=bool(config.get("STRIPE_WEBHOOK_SECRET")),
        )


@dataclass(frozen=True)
class SentMessage:
    provider_message_id: Optional[str]
    status: str


@dataclass(frozen=True)
class CreatedLink:
    link_id: str
    url: str


@dataclass(frozen=True)
class CreatedRefund:
    refund_id: str
    status: str


# =============================================================================
# SMS (Twilio REST)
# =============================================================================

class TwilioSmsGateway:
    def __init__(self, *, account_sid, auth_token, from_number, timeout: float = 10.0, disabled: bool = False):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self.disabled = disabled

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send(self, to: str, body: str) -> SentMessage:
        if self.disabled:
            raise ProviderUnavailableError(SMS_PROVIDER, "SMS sending is disabled.")
        if not self.configured:
            raise ProviderUnavailableError(SMS_PROVIDER, "SMS provider is not configured.")

        recipient = normalize_phone(to)
        if not recipient:
            raise ValidationError("Customer phone number is missing or invalid.")

        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = httpx.post(
                url,
                data={"To": recipient, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("SMS provider rejected message to %s: HTTP %s", mask_phone(recipient), e.response.status_code)
            raise ProviderUnavailableError(SMS_PROVIDER, f"SMS provider error (HTTP {e.response.status_code}).") from e
        except httpx.HTTPError as e:
            logger.error("SMS provider unreachable for %s: %s", mask_phone(recipient), type(e).__name__)
            raise ProviderUnavailableError(SMS_PROVIDER, "SMS provider is unreachable.") from e

        payload = response.json()
        return SentMessage(provider_message_id=payload.get("sid"), status=payload.get("status") or "queued")


# =============================================================================
# PAYMENTS (Stripe)
# =============================================================================

def _stripe_metadata(metadata: dict) -> dict:
    """Stripe metadata values must be strings."""
    return {k: str(v) for k, v in metadata.items() if v is not None}


class StripePaymentGateway:
    def __init__(self, *, secret_key, webhook_secret=None, currency: str = "usd",
                 success_url: str = "https://example.com/thanks"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.success_url = success_url

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _require_configured(self) -> None:
        if not self.configured:
            raise ProviderUnavailableError(PAYMENT_PROVIDER, "Payment provider is not configured.")

    def create_link(self, *, amount_cents: int, description: str, metadata: dict) -> CreatedLink:
        """Hosted checkout page for a one-off amount; metadata is echoed back by the webhook."""
        self._require_configured()
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }],
                success_url=self.success_url,
                metadata=_stripe_metadata(metadata),
                payment_intent_data={"metadata": _stripe_metadata(metadata)},
            )
        except stripe.StripeError as e:
            logger.error("Payment link creation failed: %s", e.user_message or type(e).__name__)
            raise ProviderUnavailableError(PAYMENT_PROVIDER, "Payment provider error while creating link.") from e

        return CreatedLink(link_id=session.id, url=session.url)

    def resolve_payment_intent(self, link_id: str) -> Optional[str]:
        self._require_configured()
        try:
            session = stripe.checkout.Session.retrieve(link_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise ProviderUnavailableError(PAYMENT_PROVIDER, "Payment provider error while looking up payment.") from e
        return session.get("payment_intent")

    def refund(self, *, payment_intent_id: str, amount_cents: int, metadata: dict) -> CreatedRefund:
        self._require_configured()
        try:
            refund = stripe.Refund.create(
                api_key=self.secret_key,
                payment_intent=payment_intent_id,
                amount=amount_cents,
                metadata=_stripe_metadata(metadata),
            )
        except stripe.StripeError as e:
            logger.error("Refund failed for %s: %s", payment_intent_id, e.user_message or type(e).__name__)
            raise ProviderUnavailableError(PAYMENT_PROVIDER, "Payment provider error while refunding.") from e
        return CreatedRefund(refund_id=refund.id, status=refund.status)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify and decode a webhook body.

        Returns the decoded JSON envelope as a plain dict. Without a webhook
        secret the body is trusted as-is (local development) and a warning
        is logged.
        """
        if not self.webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting webhook without signature verification")
            try:
                return json.loads(payload)
            except ValueError as e:
                raise ValidationError("Invalid webhook payload") from e
        try:
            stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
            return json.loads(payload)
        except ValueError as e:
            raise ValidationError("Invalid webhook payload") from e
        except stripe.SignatureVerificationError as e:
            raise ValidationError("Invalid webhook signature") from e


# =============================================================================
# APP WIRING
# =============================================================================

@dataclass
class ProviderBundle:
    capabilities: ProviderCapabilities
    sms: TwilioSmsGateway
    payments: StripePaymentGateway


def init_providers(app) -> ProviderBundle:
    config = app.config
    # One attempt per call; a silent retry could create a second link
    stripe.max_network_retries = 0
    timeout = float(config.get("PROVIDER_TIMEOUT_SECONDS", 10))
    bundle = ProviderBundle(
        capabilities=ProviderCapabilities.from_config(config),
        sms=TwilioSmsGateway(
            account_sid=config.get("TWILIO_SID"),
            auth_token=config.get("TWILIO_AUTH"),
            from_number=config.get("TWILIO_FROM_NUMBER"),
            timeout=timeout,
            disabled=bool(config.get("DISABLE_SMS_SENDING")),
        ),
        payments=StripePaymentGateway(
            secret_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            currency=config.get("PAYMENT_CURRENCY", "usd"),
            success_url=config.get("PAYMENT_SUCCESS_URL", "https://example.com/thanks"),
        ),
    )
    app.extensions[EXTENSION_KEY] = bundle
    return bundle


def get_providers() -> ProviderBundle:
    return current_app.extensions[EXTENSION_KEY]
