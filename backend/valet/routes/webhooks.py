# Overview: Payment provider webhook endpoint; verifies and dispatches signed events.

from flask import Blueprint, request, jsonify, current_app

from ..errors import ValetError
from ..services import payment_service
from ..services.providers import get_providers


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    """
    Signed payment event envelope (raw body + Stripe-Signature header).

    Returns:
        200: {"received": true, ...}
        400: Bad signature or payload
        500: Processing failed (provider will redeliver)
    """
    try:
        event = get_providers().payments.construct_event(
            request.get_data(),
            request.headers.get("Stripe-Signature"),
        )
    except ValetError as e:
        current_app.logger.warning("Rejected payment webhook: %s", e.message)
        return jsonify(e.payload()), e.status_code

    try:
        result = payment_service.handle_provider_event(event)
        return jsonify({"received": True, **result}), 200
    except Exception:
        current_app.logger.exception("Failed to process payment webhook %s", event.get("id"))
        return jsonify({"error": "Webhook processing failed"}), 500
