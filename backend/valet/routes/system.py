# backend/valet/routes/system.py
"""
System health endpoint.

Reports database reachability and which external providers the automation
can currently use.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Location, Ticket
from ..models.tickets import OPEN_TICKET_STATUSES
from ..services.providers import get_providers
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        location_count = db.session.query(Location).count()
        open_tickets = db.session.query(Ticket).filter(Ticket.status.in_(OPEN_TICKET_STATUSES)).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "locations": location_count,
                "open_tickets": open_tickets,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_provider_health() -> dict:
    """
    Providers are optional: a missing one degrades automation but the
    staff API keeps working.
    """
    caps = get_providers().capabilities
    warnings = []
    if not caps.can_send_sms:
        warnings.append("SMS disabled" if caps.sms_disabled else "SMS provider not configured")
    if not caps.can_create_payment_links:
        warnings.append("Payment provider not configured")
    if caps.payments_configured and not caps.webhook_secret_configured:
        warnings.append("Payment webhook signatures are not verified")

    result = {
        "status": "degraded" if warnings else "healthy",
        "details": caps.to_dict(),
    }
    if warnings:
        result["warning"] = "; ".join(warnings)
    return result


_STATUS_RANK = {"healthy": 0, "degraded": 1, "unhealthy": 2}


def overall_status(checks: dict) -> str:
    """Worst status across checks."""
    return max((c["status"] for c in checks.values()), key=_STATUS_RANK.__getitem__, default="healthy")


@system_bp.get("/health")
def health():
    """
    Returns:
        200: healthy, or degraded (providers missing, staff API still usable)
        503: database unreachable
    """
    started = time.time()
    checks = {
        "database": check_database_health(),
        "providers": check_provider_health(),
    }
    status = overall_status(checks)
    body = {
        "status": status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - started) * 1000, 2),
        "checks": checks,
    }
    return body, 503 if status == "unhealthy" else 200
