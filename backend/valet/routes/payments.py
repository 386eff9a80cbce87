# Overview: Flask API routes for payments; payment links, refunds and listings.

# backend/valet/routes/payments.py
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PermissionDeniedError, ValetError, ValidationError
from ..services import payment_service, ticket_service
from ..decorators import require_staff, require_privileged


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.get("")
@require_staff
def list_payments_route():
    """
    Query params: status, location_id, ticket_id

    Returns:
        200: {"payments": [...], "metrics": {...}}
    """
    try:
        location_id = request.args.get("location_id", type=int)
        restricted = g.staff.restricted_location_id
        if restricted is not None:
            if location_id is not None and location_id != restricted:
                raise PermissionDeniedError("You do not have access to this location")
            location_id = restricted

        payments = payment_service.list_payments(
            status=request.args.get("status") or None,
            location_id=location_id,
            ticket_id=request.args.get("ticket_id", type=int),
        )
        return jsonify({
            "payments": [p.to_dict() for p in payments],
            "metrics": payment_service.payment_metrics(payments),
        }), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/create-link")
@require_staff
def create_link_route():
    """
    Text a payment link for a ticket.

    Request body:
    {
        "ticket_id": 12,
        "amount_cents": 2000,  (optional, default: outstanding balance)
        "message": "..."  (optional lead text)
    }

    Returns:
        201: Link created and sent
        200: Existing open link re-sent, or a link is already being created
        400: Invalid input / nothing owed
        503: SMS or payment provider unavailable
    """
    try:
        data = request.get_json(silent=True) or {}
        ticket_id = data.get("ticket_id")
        if not isinstance(ticket_id, int) or isinstance(ticket_id, bool):
            raise ValidationError("ticket_id is required")
        ticket_service.get_ticket(ticket_id, staff=g.staff)

        result = payment_service.create_link_for_ticket(
            ticket_id,
            amount_cents=data.get("amount_cents"),
            message=data.get("message"),
            actor=g.staff.name,
        )
        status = 201 if result.action == payment_service.LINK_CREATED else 200
        return jsonify(result.to_dict()), status
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment link")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/refund")
@require_staff
@require_privileged
def refund_route(payment_id: int):
    """
    Refund all or part of a completed payment.

    Request body:
    {
        "amount_cents": 500,  (optional, default: remaining refundable amount)
        "reason": "Customer complaint"
    }

    Returns:
        200: Updated payment
        400: Invalid refund amount (payload includes refundable_cents)
        503: Payment provider unavailable (nothing recorded)
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.get_payment(payment_id)
        ticket_service.get_ticket(payment.ticket_id, staff=g.staff)

        payment = payment_service.refund_payment(
            payment_id,
            amount_cents=data.get("amount_cents"),
            reason=data.get("reason"),
            actor=g.staff.name,
        )
        return jsonify({"payment": payment.to_dict()}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to refund payment")
        return jsonify({"error": "Internal server error"}), 500
