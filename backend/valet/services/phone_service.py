# Overview: Phone number normalization and exact-match variant sets for customer lookup.

"""
Customer phones arrive in whatever shape the carrier or the valet typed:
"+13125550100", "13125550100", "(312) 555-0100", "312-555-0100".

resolve_phone() produces one canonical E.164-style form plus the set of
spellings a stored number could plausibly have. The set is only ever used
for exact IN (...) lookups; there is no partial or suffix matching, so two
customers whose numbers share trailing digits can never be confused.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


DEFAULT_COUNTRY_CODE = "1"
_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class ResolvedPhone:
    raw: str
    canonical: str
    variants: frozenset[str]

    def __bool__(self) -> bool:
        return bool(self.canonical)

    def matches(self, other: "ResolvedPhone") -> bool:
        return bool(self.canonical) and self.canonical == other.canonical


def digits_only(phone: str | None) -> str:
    return _NON_DIGITS.sub("", phone or "")


def normalize_phone(phone: str | None) -> str:
    """
    Canonical "+<country><number>" form; "" when there are no digits.

    10 digits -> assumed NANP, "+1" prefixed. Anything else keeps its digits
    behind a single "+".
    """
    digits = digits_only(phone)
    if not digits:
        return ""
    if len(digits) == 10:
        return f"+{DEFAULT_COUNTRY_CODE}{digits}"
    return f"+{digits}"


def _national_formats(ten: str) -> set[str]:
    area, exchange, line = ten[:3], ten[3:6], ten[6:]
    return {
        ten,
        f"({area}) {exchange}-{line}",
        f"({area}){exchange}-{line}",
        f"{area}-{exchange}-{line}",
        f"{area}.{exchange}.{line}",
        f"{area} {exchange} {line}",
        f"{DEFAULT_COUNTRY_CODE}{ten}",
        f"+{DEFAULT_COUNTRY_CODE}{ten}",
        f"+{DEFAULT_COUNTRY_CODE} {area}-{exchange}-{line}",
        f"+{DEFAULT_COUNTRY_CODE} ({area}) {exchange}-{line}",
        f"+{DEFAULT_COUNTRY_CODE} {area} {exchange} {line}",
        f"{DEFAULT_COUNTRY_CODE}-{area}-{exchange}-{line}",
    }


def resolve_phone(phone: str | None) -> ResolvedPhone:
    raw = (phone or "").strip()
    canonical = normalize_phone(raw)
    if not canonical:
        return ResolvedPhone(raw=raw, canonical="", variants=frozenset())

    digits = canonical[1:]
    variants = {raw, canonical, digits}

    national = None
    if len(digits) == 11 and digits.startswith(DEFAULT_COUNTRY_CODE):
        national = digits[1:]
    elif len(digits) == 10:
        national = digits
    if national:
        variants |= _national_formats(national)

    variants.discard("")
    return ResolvedPhone(raw=raw, canonical=canonical, variants=frozenset(variants))


def phone_variants(phone: str | None) -> frozenset[str]:
    return resolve_phone(phone).variants


def mask_phone(phone: str | None) -> str:
    """For log lines: keep the last four digits only."""
    digits = digits_only(phone)
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"
