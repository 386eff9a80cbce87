# Overview: Flask API routes for SMS; inbound carrier webhook, staff sends and history.

# backend/valet/routes/messages.py
"""
Messaging API Routes

The inbound webhook is called by the SMS carrier, not by staff: it is not
authenticated and ALWAYS answers 200 with an empty TwiML document. The
carrier does not read the result, and an error status only triggers
redeliveries.
"""

from flask import Blueprint, Response, request, jsonify, g, current_app

from ..errors import PermissionDeniedError, ValetError, ValidationError
from ..services import automation_service, message_service, ticket_service
from ..decorators import require_staff, require_privileged


messages_bp = Blueprint("messages", __name__, url_prefix="/api/messages")

EMPTY_TWIML = "<Response></Response>"


def _twiml_ack() -> Response:
    return Response(EMPTY_TWIML, status=200, mimetype="text/xml")


@messages_bp.post("/inbound")
def inbound_route():
    """
    Carrier webhook (form-encoded From, To, Body, MessageSid).

    Returns:
        200 text/xml <Response></Response>, regardless of outcome
    """
    form = request.form
    try:
        outcome = automation_service.handle_inbound_message(
            body=form.get("Body"),
            sender=form.get("From"),
            provider_message_id=form.get("MessageSid") or form.get("SmsSid"),
            recipient=form.get("To"),
        )
        current_app.logger.info("Inbound message processed: %s", outcome.action)
    except Exception:
        current_app.logger.exception("Failed to process inbound message")
    return _twiml_ack()


@messages_bp.get("")
@require_staff
def list_messages_route():
    """
    Query params: ticket_id, location_id

    Returns:
        200: {"messages": [...]} newest first
    """
    try:
        ticket_id = request.args.get("ticket_id", type=int)
        location_id = request.args.get("location_id", type=int)
        if ticket_id is not None:
            ticket_service.get_ticket(ticket_id, staff=g.staff)

        restricted = g.staff.restricted_location_id
        if restricted is not None:
            if location_id is not None and location_id != restricted:
                raise PermissionDeniedError("You do not have access to this location")
            location_id = restricted

        messages = message_service.list_messages(ticket_id=ticket_id, location_id=location_id)
        return jsonify({"messages": [m.to_dict() for m in messages]}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list messages")
        return jsonify({"error": "Internal server error"}), 500


@messages_bp.post("/send")
@require_staff
def send_message_route():
    """
    Staff text to a ticket's customer.

    Request body:
    {
        "ticket_id": 12,
        "body": "Your car is out front",  (or "template_id": 3)
    }

    Returns:
        201: Message sent and recorded
        400: Invalid input
        503: SMS provider unavailable (nothing recorded)
    """
    try:
        data = request.get_json(silent=True) or {}
        ticket_id = data.get("ticket_id")
        if not isinstance(ticket_id, int) or isinstance(ticket_id, bool):
            raise ValidationError("ticket_id is required")
        ticket = ticket_service.get_ticket(ticket_id, staff=g.staff)

        message = message_service.send_staff_message(
            ticket,
            body=data.get("body"),
            template_id=data.get("template_id"),
            actor=g.staff.name,
        )
        return jsonify({"message": message.to_dict()}), 201
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to send message")
        return jsonify({"error": "Internal server error"}), 500


@messages_bp.get("/status")
@require_staff
def messaging_status_route():
    try:
        return jsonify(message_service.messaging_status()), 200
    except Exception:
        current_app.logger.exception("Failed to read messaging status")
        return jsonify({"error": "Internal server error"}), 500


@messages_bp.get("/templates")
@require_staff
def list_templates_route():
    try:
        templates = message_service.list_templates()
        return jsonify({"templates": [t.to_dict() for t in templates]}), 200
    except Exception:
        current_app.logger.exception("Failed to list templates")
        return jsonify({"error": "Internal server error"}), 500


@messages_bp.post("/templates")
@require_staff
@require_privileged
def create_template_route():
    try:
        data = request.get_json(silent=True) or {}
        template = message_service.create_template(name=data.get("name"), body=data.get("body"))
        return jsonify({"template": template.to_dict()}), 201
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create template")
        return jsonify({"error": "Internal server error"}), 500
