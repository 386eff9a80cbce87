# Overview: Column-driven payload validation plus ticket and location business rules.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .models.tickets import RATE_HOURLY, RATE_OVERNIGHT, VALID_RATE_TYPES
from .time_utils import parse_iso_datetime


# $100,000.00
MAX_RATE_CENTS = 10_000_000
MAX_BASIS_POINTS = 10_000
# A prepaid stay longer than a year is a typo
MAX_DURATION_HOURS = 24 * 366
MAX_DURATION_DAYS = 366


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Which columns an API caller may write, and which a create must carry.

    Anything outside writable_fields (ids, version counters, derived phone
    forms, timestamps) is rejected outright rather than silently dropped.
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = field(default_factory=frozenset)


TICKET_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "location_id",
        "ticket_number",
        "customer_name",
        "customer_phone",
        "vehicle_make",
        "vehicle_model",
        "vehicle_color",
        "license_plate",
        "parking_location",
        "rate_type",
        "in_out_privileges",
        "status",
        "vehicle_status",
        "check_in_time",
        "check_out_time",
        "duration_hours",
        "duration_days",
        "will_return",
        "notes",
    }),
    required_on_create=frozenset({
        "location_id",
        "ticket_number",
        "customer_name",
        "customer_phone",
        "vehicle_make",
        "vehicle_model",
        "rate_type",
    }),
)

LOCATION_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "name",
        "identifier",
        "overnight_rate_cents",
        "overnight_in_out_allowed",
        "tax_rate_bps",
        "revenue_share_bps",
        "pricing_tiers",
    }),
    required_on_create=frozenset({"name", "identifier", "overnight_rate_cents"}),
)


# =============================================================================
# COERCION
# =============================================================================

def _as_int(key: str, value: Any) -> int:
    # bool is an int subclass; JSON true is never a count of cents
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{key} must be a whole number")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        digits = text[1:] if text[:1] in "+-" else text
        if digits.isdecimal():
            return int(text)
    raise ValidationError(f"{key} must be a whole number")


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    raise ValidationError(f"{key} must be true or false")


def _as_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        parsed = parse_iso_datetime(value, field=key)
        if parsed is not None:
            return parsed
    raise ValidationError(f"{key} must be an ISO-8601 datetime")


def _as_text(key: str, value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise ValidationError(f"{key} must be a string")
    return str(value).strip()


_COERCERS: tuple[tuple[type, Callable[[str, Any], Any]], ...] = (
    (Boolean, _as_bool),
    (Integer, _as_int),
    (DateTime, _as_datetime),
    (String, _as_text),
    (Text, _as_text),
)


def _coerce(column, value: Any) -> Any:
    for sa_type, coercer in _COERCERS:
        if isinstance(column.type, sa_type):
            return coercer(column.key, value)
    # JSON columns are validated by their own business rules
    return value


def _check_text_bounds(column, value: Any) -> None:
    if not isinstance(value, str):
        return
    if value == "" and not column.nullable:
        raise ValidationError(f"{column.key} cannot be blank")
    limit = getattr(column.type, "length", None)
    if limit and len(value) > limit:
        raise ValidationError(f"{column.key} exceeds max length {limit}")


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Turn a JSON body into a clean {column: value} patch for `model`.

    Types, nullability and String(n) lengths come from the SQLAlchemy
    column metadata; the policy decides which keys are accepted at all.
    With partial=False (create) every required field must be present and
    non-empty; with partial=True only the keys sent are checked.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(k for k in policy.required_on_create if payload.get(k) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    columns = {c.key: c for c in model.__mapper__.columns}
    rejected = sorted(k for k in payload if k not in policy.writable_fields or k not in columns)
    if rejected:
        raise ValidationError(f"Field not allowed: {', '.join(rejected)}")

    patch: dict = {}
    for key, raw in payload.items():
        column = columns[key]
        if raw is None:
            if not column.nullable:
                raise ValidationError(f"{key} cannot be null")
            patch[key] = None
            continue
        value = _coerce(column, raw)
        _check_text_bounds(column, value)
        patch[key] = value
    return patch


# =============================================================================
# BUSINESS RULES
# =============================================================================

def enforce_rules_ticket(patch: dict, *, rate_type: str | None = None) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.

    rate_type is the ticket's effective rate type after the patch. A prepaid
    duration only makes sense for its own rate type, so the other one must
    stay empty.
    """
    if "rate_type" in patch and patch["rate_type"] not in VALID_RATE_TYPES:
        raise ValidationError(f"rate_type must be one of: {', '.join(sorted(VALID_RATE_TYPES))}")

    hours = patch.get("duration_hours")
    if hours is not None and not (0 < hours <= MAX_DURATION_HOURS):
        raise ValidationError(f"duration_hours must be between 1 and {MAX_DURATION_HOURS}")

    days = patch.get("duration_days")
    if days is not None and not (0 < days <= MAX_DURATION_DAYS):
        raise ValidationError(f"duration_days must be between 1 and {MAX_DURATION_DAYS}")

    effective = patch.get("rate_type", rate_type)
    if effective == RATE_HOURLY and days is not None:
        raise ValidationError("duration_days only applies to OVERNIGHT tickets")
    if effective == RATE_OVERNIGHT and hours is not None:
        raise ValidationError("duration_hours only applies to HOURLY tickets")

    check_in = patch.get("check_in_time")
    check_out = patch.get("check_out_time")
    if check_in and check_out and check_out < check_in:
        raise ValidationError("check_out_time cannot be before check_in_time")


def enforce_rules_location(patch: dict) -> None:
    rate = patch.get("overnight_rate_cents")
    if rate is not None and not (0 <= rate <= MAX_RATE_CENTS):
        raise ValidationError(f"overnight_rate_cents must be between 0 and {MAX_RATE_CENTS}")

    for key in ("tax_rate_bps", "revenue_share_bps"):
        value = patch.get(key)
        if value is not None and not (0 <= value <= MAX_BASIS_POINTS):
            raise ValidationError(f"{key} must be between 0 and {MAX_BASIS_POINTS} basis points")

    identifier = patch.get("identifier")
    if identifier is not None:
        if not identifier.replace("-", "").replace("_", "").isalnum():
            raise ValidationError("identifier may only contain letters, digits, '-' and '_'")
        patch["identifier"] = identifier.lower()

    if "pricing_tiers" in patch and patch["pricing_tiers"] is not None:
        if not isinstance(patch["pricing_tiers"], list):
            raise ValidationError("pricing_tiers must be a list")
