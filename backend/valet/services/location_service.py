# Overview: Valet location management; rate schedules, listing and demo seed data.

from __future__ import annotations

import logging
from typing import Optional

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Location
from ..validation import LOCATION_POLICY, enforce_rules_location, validate_payload
from .audit_service import LOCATION_UPDATED, append_audit_event, diff_fields
from .pricing_service import parse_tiers


logger = logging.getLogger(__name__)


# Demo stands used by `flask locations seed`
SEED_LOCATIONS = [
    {
        "name": "Hampton Inn",
        "identifier": "hampton",
        "overnight_rate_cents": 4600,
        "overnight_in_out_allowed": True,
        "tax_rate_bps": 2325,
        "revenue_share_bps": 500,
        "pricing_tiers": [
            {"max_hours": 3, "rate_cents": 2000, "in_out_allowed": False},
            {"max_hours": None, "rate_cents": 4600, "in_out_allowed": True},
        ],
    },
    {
        "name": "Hyatt Regency",
        "identifier": "hyatt",
        "overnight_rate_cents": 5500,
        "overnight_in_out_allowed": True,
        "tax_rate_bps": 2325,
        "revenue_share_bps": 600,
        "pricing_tiers": [
            {"max_hours": 2, "rate_cents": 2200, "in_out_allowed": False},
            {"max_hours": 5, "rate_cents": 3300, "in_out_allowed": False},
            {"max_hours": None, "rate_cents": 5500, "in_out_allowed": True},
        ],
    },
]


def get_location(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if not location:
        raise NotFoundError("Location not found")
    return location


def get_location_by_identifier(identifier: str) -> Location:
    location = db.session.query(Location).filter_by(identifier=(identifier or "").lower()).first()
    if not location:
        raise NotFoundError(f"Location '{identifier}' not found")
    return location


def list_locations(*, location_id: Optional[int] = None) -> list[Location]:
    query = db.session.query(Location)
    if location_id is not None:
        query = query.filter(Location.id == location_id)
    return query.order_by(Location.name.asc()).all()


def _normalized_tiers(raw) -> list[dict]:
    return [t.to_dict() for t in parse_tiers(raw or [])]


def _ensure_identifier_available(identifier: str, *, exclude_id: Optional[int] = None) -> None:
    query = db.session.query(Location).filter(Location.identifier == identifier)
    if exclude_id is not None:
        query = query.filter(Location.id != exclude_id)
    if query.first():
        raise ConflictError(f"A location with identifier '{identifier}' already exists")


def create_location(payload: dict, *, actor: Optional[str] = None) -> Location:
    patch = validate_payload(model=Location, payload=payload, policy=LOCATION_POLICY, partial=False)
    enforce_rules_location(patch)
    _ensure_identifier_available(patch["identifier"])
    patch["pricing_tiers"] = _normalized_tiers(patch.get("pricing_tiers"))

    location = Location(**patch)
    db.session.add(location)
    db.session.flush()
    append_audit_event(
        action=LOCATION_UPDATED,
        actor=actor,
        details={"location_id": location.id, "identifier": location.identifier, "created": True},
    )
    db.session.commit()
    return location


def update_location(location_id: int, payload: dict, *, actor: Optional[str] = None) -> Location:
    """
    Update name, rates or tier schedule.

    Tickets price against the schedule in effect when they are read, so a
    tier change reprices every open ticket at this location.
    """
    location = get_location(location_id)
    patch = validate_payload(model=Location, payload=payload, policy=LOCATION_POLICY, partial=True)
    if not patch:
        raise ValidationError("No fields to update")
    enforce_rules_location(patch)
    if "identifier" in patch:
        _ensure_identifier_available(patch["identifier"], exclude_id=location.id)
    if "pricing_tiers" in patch:
        patch["pricing_tiers"] = _normalized_tiers(patch["pricing_tiers"])

    before = {k: getattr(location, k) for k in patch}
    for field, value in patch.items():
        setattr(location, field, value)

    changes = diff_fields(before, patch)
    if changes:
        append_audit_event(
            action=LOCATION_UPDATED,
            actor=actor,
            details={"location_id": location.id, "identifier": location.identifier, "changes": changes},
        )
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return location


def seed_locations() -> list[Location]:
    """Create or refresh the demo locations (idempotent)."""
    seeded = []
    for spec in SEED_LOCATIONS:
        location = db.session.query(Location).filter_by(identifier=spec["identifier"]).first()
        if location is None:
            location = Location(identifier=spec["identifier"])
            db.session.add(location)
        for field, value in spec.items():
            setattr(location, field, value)
        location.pricing_tiers = _normalized_tiers(spec["pricing_tiers"])
        seeded.append(location)
    db.session.commit()
    logger.info("Seeded %d locations", len(seeded))
    return seeded
