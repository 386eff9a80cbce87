# Overview: Request decorators resolving staff identity and enforcing privileged actions.

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import current_app, g, jsonify, request


ROLE_ADMIN = "ADMIN"
ROLE_MANAGER = "MANAGER"
ROLE_STAFF = "STAFF"
VALID_ROLES = {ROLE_ADMIN, ROLE_MANAGER, ROLE_STAFF}
PRIVILEGED_ROLES = {ROLE_ADMIN, ROLE_MANAGER}


@dataclass(frozen=True)
class StaffContext:
    name: str
    role: str
    location_id: Optional[int] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def restricted_location_id(self) -> Optional[int]:
        """Location a STAFF user is confined to; None means all locations."""
        if self.role == ROLE_STAFF:
            return self.location_id
        return None

    def can_access_location(self, location_id: Optional[int]) -> bool:
        restricted = self.restricted_location_id
        return restricted is None or restricted == location_id


def parse_staff_tokens(raw: str) -> dict[str, StaffContext]:
    """
    "token:ROLE:Name[:location_id],..." -> {token: StaffContext}

    Malformed entries are skipped.
    """
    directory: dict[str, StaffContext] = {}
    for entry in (raw or "").split(","):
        parts = [p.strip() for p in entry.strip().split(":")]
        if len(parts) < 3 or not parts[0]:
            continue
        token, role, name = parts[0], parts[1].upper(), parts[2]
        if role not in VALID_ROLES or not name:
            continue
        location_id = None
        if len(parts) > 3 and parts[3].isdigit():
            location_id = int(parts[3])
        directory[token] = StaffContext(name=name, role=role, location_id=location_id)
    return directory


def resolve_staff(token: str) -> Optional[StaffContext]:
    return parse_staff_tokens(current_app.config.get("STAFF_TOKENS", "")).get(token)


def require_staff(f):
    """
    Require a known staff bearer token.

    Sets g.staff (StaffContext). Returns 401 when the Authorization header
    is missing or the token is unknown.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        staff = resolve_staff(token)
        if not staff:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.staff = staff
        return f(*args, **kwargs)

    return decorated_function


def require_privileged(f):
    """
    Require ADMIN or MANAGER role.

    Must be used after @require_staff.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        staff = getattr(g, "staff", None)
        if staff is None:
            return jsonify({"error": "Authentication required"}), 401
        if not staff.is_privileged:
            return jsonify({"error": "This action requires a manager or admin"}), 403
        return f(*args, **kwargs)

    return decorated_function
