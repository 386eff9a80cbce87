# Overview: Tier-schedule pricing for valet tickets; pure functions, no database access.

"""
Valet Pricing Engine

Computes the amount owed for a ticket, in integer cents, from the owning
location's rate schedule.

RULES:
- A prepaid duration for the ticket's rate type (duration_hours for HOURLY,
  duration_days for OVERNIGHT) replaces elapsed time entirely.
- Elapsed time is (check_out_time or now) - check_in_time, clamped at zero.
- OVERNIGHT: overnight_rate_cents per started day, minimum one day.
- HOURLY: first tier (ascending max_hours, unlimited tier last) whose
  max_hours is None or >= elapsed hours. Once the stay reaches 24 hours the
  overnight per-day rate applies regardless of tier. No tiers configured
  means the overnight per-day rate.

Callers pass a PricingSchedule snapshot, never a live Location, so a
concurrent tier edit cannot change the schedule halfway through a
calculation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

from ..errors import ValidationError
from ..models.tickets import RATE_HOURLY, RATE_OVERNIGHT
from ..time_utils import hours_between, utcnow


HOURS_PER_DAY = 24
MAX_RATE_CENTS = 10_000_000  # $100,000.00 per unit is already absurd for valet


# =============================================================================
# SCHEDULE SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class PricingTier:
    max_hours: Optional[int]
    rate_cents: int
    in_out_allowed: bool = False

    def to_dict(self) -> dict:
        return {
            "max_hours": self.max_hours,
            "rate_cents": self.rate_cents,
            "in_out_allowed": self.in_out_allowed,
        }


@dataclass(frozen=True)
class PricingSchedule:
    tiers: tuple[PricingTier, ...]
    overnight_rate_cents: int
    overnight_in_out_allowed: bool = False

    @classmethod
    def from_location(cls, location) -> "PricingSchedule":
        return cls(
            tiers=parse_tiers(location.pricing_tiers or []),
            overnight_rate_cents=int(location.overnight_rate_cents),
            overnight_in_out_allowed=bool(location.overnight_in_out_allowed),
        )

    @property
    def unlimited_tier(self) -> Optional[PricingTier]:
        for tier in self.tiers:
            if tier.max_hours is None:
                return tier
        return None


def _coerce_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    return value


def parse_tiers(raw: Iterable[dict]) -> tuple[PricingTier, ...]:
    """
    Validate and normalize a stored/submitted tier list.

    Accepts snake_case keys and the camelCase keys older records used
    (maxHours / rateCents / inOutPrivileges). Returns tiers sorted
    ascending by max_hours with the unlimited tier last.

    Raises ValidationError when max_hours repeats, is not positive, or more
    than one unlimited tier is present.
    """
    tiers: list[PricingTier] = []
    for index, item in enumerate(raw or []):
        if not isinstance(item, dict):
            raise ValidationError(f"pricing_tiers[{index}] must be an object")

        max_hours = item.get("max_hours", item.get("maxHours"))
        rate_cents = item.get("rate_cents", item.get("rateCents"))
        in_out = item.get("in_out_allowed", item.get("inOutPrivileges", item.get("inOutAllowed", False)))

        if max_hours is not None:
            max_hours = _coerce_int(max_hours, f"pricing_tiers[{index}].max_hours")
            if max_hours <= 0:
                raise ValidationError(f"pricing_tiers[{index}].max_hours must be positive")

        if rate_cents is None:
            raise ValidationError(f"pricing_tiers[{index}].rate_cents is required")
        rate_cents = _coerce_int(rate_cents, f"pricing_tiers[{index}].rate_cents")
        if rate_cents < 0 or rate_cents > MAX_RATE_CENTS:
            raise ValidationError(f"pricing_tiers[{index}].rate_cents is out of range")

        tiers.append(PricingTier(max_hours=max_hours, rate_cents=rate_cents, in_out_allowed=bool(in_out)))

    unlimited = [t for t in tiers if t.max_hours is None]
    if len(unlimited) > 1:
        raise ValidationError("pricing_tiers may contain at most one tier without max_hours")

    bounded = sorted((t for t in tiers if t.max_hours is not None), key=lambda t: t.max_hours)
    seen: set[int] = set()
    for tier in bounded:
        if tier.max_hours in seen:
            raise ValidationError(f"pricing_tiers has duplicate max_hours={tier.max_hours}")
        seen.add(tier.max_hours)

    return tuple(bounded + unlimited)


# =============================================================================
# BILLING INPUTS (tagged union)
# =============================================================================

@dataclass(frozen=True)
class HourlyBilling:
    """Exactly one of elapsed_hours / prepaid_hours is set."""
    elapsed_hours: Optional[float] = None
    prepaid_hours: Optional[int] = None

    def __post_init__(self):
        if (self.elapsed_hours is None) == (self.prepaid_hours is None):
            raise ValueError("HourlyBilling needs exactly one of elapsed_hours or prepaid_hours")

    @property
    def hours(self) -> float:
        if self.prepaid_hours is not None:
            return float(self.prepaid_hours)
        return max(float(self.elapsed_hours), 0.0)


@dataclass(frozen=True)
class OvernightBilling:
    """Exactly one of elapsed_hours / prepaid_days is set."""
    elapsed_hours: Optional[float] = None
    prepaid_days: Optional[int] = None

    def __post_init__(self):
        if (self.elapsed_hours is None) == (self.prepaid_days is None):
            raise ValueError("OvernightBilling needs exactly one of elapsed_hours or prepaid_days")

    @property
    def days(self) -> float:
        if self.prepaid_days is not None:
            return float(self.prepaid_days)
        return max(float(self.elapsed_hours), 0.0) / HOURS_PER_DAY


Billing = Union[HourlyBilling, OvernightBilling]


def billing_for_ticket(ticket, now: Optional[datetime] = None) -> Billing:
    """Build the billing input for a ticket at reference time `now`."""
    if ticket.rate_type == RATE_OVERNIGHT:
        if ticket.duration_days is not None and ticket.duration_days > 0:
            return OvernightBilling(prepaid_days=int(ticket.duration_days))
    elif ticket.rate_type == RATE_HOURLY:
        if ticket.duration_hours is not None and ticket.duration_hours > 0:
            return HourlyBilling(prepaid_hours=int(ticket.duration_hours))
    else:
        raise ValidationError(f"Unknown rate type: {ticket.rate_type}")

    end = ticket.check_out_time or now or utcnow()
    elapsed = hours_between(ticket.check_in_time, end)
    if ticket.rate_type == RATE_OVERNIGHT:
        return OvernightBilling(elapsed_hours=elapsed)
    return HourlyBilling(elapsed_hours=elapsed)


# =============================================================================
# CALCULATION
# =============================================================================

def overnight_charge_cents(days: float, schedule: PricingSchedule) -> int:
    """Per started day, never less than one day."""
    billable_days = max(1, math.ceil(days))
    return schedule.overnight_rate_cents * billable_days


def calculate_amount_cents(billing: Billing, schedule: PricingSchedule) -> int:
    if isinstance(billing, OvernightBilling):
        return overnight_charge_cents(billing.days, schedule)

    hours = billing.hours
    days = hours / HOURS_PER_DAY

    # Tier pricing only covers same-day stays
    if not schedule.tiers or days >= 1:
        return overnight_charge_cents(days, schedule)

    for tier in schedule.tiers:
        if tier.max_hours is None or hours <= tier.max_hours:
            return tier.rate_cents

    # Every bounded tier exceeded and no unlimited tier configured
    return overnight_charge_cents(days, schedule)


def calculate_projected_amount_cents(
    ticket,
    *,
    now: Optional[datetime] = None,
    schedule: Optional[PricingSchedule] = None,
) -> int:
    """Amount owed for `ticket` as of `now` (check-out time wins when set)."""
    if schedule is None:
        schedule = PricingSchedule.from_location(ticket.location)
    return calculate_amount_cents(billing_for_ticket(ticket, now), schedule)


def elapsed_hours(ticket, now: Optional[datetime] = None) -> float:
    """Wall-clock hours on the lot, rounded to one decimal for display."""
    end = ticket.check_out_time or now or utcnow()
    return round(hours_between(ticket.check_in_time, end), 1)


# =============================================================================
# IN/OUT POLICY
# =============================================================================

def has_in_out_privileges(rate_type: str, schedule: PricingSchedule, ticket_override: bool = False) -> bool:
    """
    Whether the vehicle may leave and come back on this ticket.

    OVERNIGHT: the location's overnight flag, else the unlimited tier's flag.
    HOURLY: any bounded (same-day) tier that allows in/out.
    Staff may also grant privileges on the ticket itself.
    """
    if ticket_override:
        return True

    if rate_type == RATE_OVERNIGHT:
        if schedule.overnight_in_out_allowed:
            return True
        unlimited = schedule.unlimited_tier
        return bool(unlimited and unlimited.in_out_allowed)

    return any(t.max_hours is not None and t.in_out_allowed for t in schedule.tiers)


def ticket_has_in_out_privileges(ticket, schedule: Optional[PricingSchedule] = None) -> bool:
    if schedule is None:
        schedule = PricingSchedule.from_location(ticket.location)
    return has_in_out_privileges(ticket.rate_type, schedule, bool(ticket.in_out_privileges))


def format_cents(cents: int) -> str:
    return f"${cents / 100:,.2f}"
