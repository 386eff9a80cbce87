# Overview: Flask API routes for valet tickets; parses input and returns JSON responses.

# backend/valet/routes/tickets.py
"""
Ticket API Routes

DESIGN:
- Create (check-in) -> check-in automation runs after commit
- PATCH fields, status and vehicle status; payment gates return 402 with
  the outstanding amount
- Delete is privileged and audit-logged before removal
- STAFF users only see their own location's tickets
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import ValetError, ValidationError
from ..services import audit_service, ticket_service
from ..decorators import require_staff, require_privileged


tickets_bp = Blueprint("tickets", __name__, url_prefix="/api/tickets")


def _int_arg(name: str):
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


@tickets_bp.get("")
@require_staff
def list_tickets_route():
    """
    List tickets with billing summaries.

    Query params: location_id, status, vehicle_status, search

    Returns:
        200: {"tickets": [...], "metrics": {...}}
    """
    try:
        tickets, metrics = ticket_service.list_tickets(
            location_id=_int_arg("location_id"),
            status=request.args.get("status") or None,
            vehicle_status=request.args.get("vehicle_status") or None,
            search=request.args.get("search") or None,
            staff=g.staff,
        )
        return jsonify({"tickets": tickets, "metrics": metrics}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list tickets")
        return jsonify({"error": "Internal server error"}), 500


@tickets_bp.post("")
@require_staff
def create_ticket_route():
    """
    Check a vehicle in.

    Request body:
    {
        "location_id": 1,
        "ticket_number": "1042",
        "customer_name": "Jordan",
        "customer_phone": "(312) 555-0100",
        "vehicle_make": "Honda",
        "vehicle_model": "Civic",
        "rate_type": "HOURLY",
        "duration_hours": 3  (optional prepaid stay)
    }

    Returns:
        201: {"ticket": {...}, "automation": {...}}
        400: Invalid input
        409: Ticket number already open at this location
    """
    try:
        ticket = ticket_service.create_ticket(request.get_json(silent=True), staff=g.staff)
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create ticket")
        return jsonify({"error": "Internal server error"}), 500

    automation = ticket_service.run_checkin_automation(ticket)
    return jsonify({"ticket": ticket_service.ticket_summary(ticket), "automation": automation}), 201


@tickets_bp.get("/<int:ticket_id>")
@require_staff
def get_ticket_route(ticket_id: int):
    try:
        ticket = ticket_service.get_ticket(ticket_id, staff=g.staff)
        return jsonify({"ticket": ticket_service.ticket_summary(ticket)}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load ticket")
        return jsonify({"error": "Internal server error"}), 500


@tickets_bp.patch("/<int:ticket_id>")
@require_staff
def update_ticket_route(ticket_id: int):
    """
    Update a ticket; all-or-nothing.

    Returns:
        200: Updated ticket summary
        400: Invalid input
        402: Outstanding balance blocks the status / vehicle change
        403: Location reassignment by non-privileged staff
        409: Illegal status transition
    """
    try:
        ticket = ticket_service.update_ticket(ticket_id, request.get_json(silent=True), staff=g.staff)
        return jsonify({"ticket": ticket_service.ticket_summary(ticket)}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update ticket")
        return jsonify({"error": "Internal server error"}), 500


@tickets_bp.delete("/<int:ticket_id>")
@require_staff
@require_privileged
def delete_ticket_route(ticket_id: int):
    try:
        ticket_service.delete_ticket(ticket_id, staff=g.staff)
        return jsonify({"deleted": True, "ticket_id": ticket_id}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete ticket")
        return jsonify({"error": "Internal server error"}), 500


@tickets_bp.get("/<int:ticket_id>/audit")
@require_staff
def ticket_audit_route(ticket_id: int):
    try:
        ticket_service.get_ticket(ticket_id, staff=g.staff)
        entries = audit_service.list_ticket_audit(ticket_id, limit=request.args.get("limit", 100, type=int))
        return jsonify({"audit": [e.to_dict() for e in entries]}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load ticket audit")
        return jsonify({"error": "Internal server error"}), 500
