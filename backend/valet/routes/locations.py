# Overview: Flask API routes for valet locations and their rate schedules.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PermissionDeniedError, ValetError
from ..services import location_service
from ..decorators import require_staff, require_privileged


locations_bp = Blueprint("locations", __name__, url_prefix="/api/locations")


@locations_bp.get("")
@require_staff
def list_locations_route():
    try:
        locations = location_service.list_locations(location_id=g.staff.restricted_location_id)
        return jsonify({"locations": [loc.to_dict() for loc in locations]}), 200
    except Exception:
        current_app.logger.exception("Failed to list locations")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.get("/<int:location_id>")
@require_staff
def get_location_route(location_id: int):
    try:
        if not g.staff.can_access_location(location_id):
            raise PermissionDeniedError("You do not have access to this location")
        return jsonify({"location": location_service.get_location(location_id).to_dict()}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load location")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.post("")
@require_staff
@require_privileged
def create_location_route():
    """
    Request body:
    {
        "name": "Hampton Inn",
        "identifier": "hampton",
        "overnight_rate_cents": 4600,
        "overnight_in_out_allowed": true,
        "pricing_tiers": [{"max_hours": 3, "rate_cents": 2000, "in_out_allowed": false}, ...]
    }

    Returns:
        201: Location created
        400: Invalid input / tier schedule
        409: Identifier already used
    """
    try:
        location = location_service.create_location(request.get_json(silent=True), actor=g.staff.name)
        return jsonify({"location": location.to_dict()}), 201
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create location")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.patch("/<int:location_id>")
@require_staff
@require_privileged
def update_location_route(location_id: int):
    try:
        location = location_service.update_location(
            location_id, request.get_json(silent=True), actor=g.staff.name
        )
        return jsonify({"location": location.to_dict()}), 200
    except ValetError as e:
        return jsonify(e.payload()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update location")
        return jsonify({"error": "Internal server error"}), 500
