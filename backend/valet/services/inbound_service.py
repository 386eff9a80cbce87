# Overview: Interprets inbound customer texts; resolves the ticket and classifies intent.

"""
Inbound Message Interpreter

Given the raw SMS body and the sender's phone:

1. Resolve the sender's phone variants (phone_service).
2. Pull a ticket-number token out of the body: "ticket 123" / "#123"
   phrasing first, then a lone token of 3+ characters as a last resort.
3. Find the open ticket (CHECKED_IN / READY_FOR_PICKUP):
     a. by phone (preferring the one whose number was quoted),
     b. else by quoted number AND phone,
     c. else by quoted number alone (logged as low confidence).
4. Classify intent with whole-word keyword matching:
     pickup request / return-yes / return-no.
   These are independent flags; the automation service decides what a
   message that is both "ready" and "yes" means for the ticket at hand.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Ticket
from ..models.tickets import OPEN_TICKET_STATUSES
from .phone_service import ResolvedPhone, mask_phone, resolve_phone


logger = logging.getLogger(__name__)


REQUEST_KEYWORDS = ("ready", "pickup", "pick up", "pick-up", "car", "retrieve", "bring", "vehicle")
RETURN_YES_KEYWORDS = ("yes", "y", "yeah", "yep", "yup", "sure", "return", "returning", "back",
                       "coming back", "will return")
RETURN_NO_KEYWORDS = ("no", "n", "nope", "not", "never", "not returning", "won't return", "wont return",
                      "not coming back")

# Words that look like bare ticket numbers but never are
_NON_TICKET_WORDS = frozenset(
    {w for phrase in REQUEST_KEYWORDS + RETURN_YES_KEYWORDS + RETURN_NO_KEYWORDS for w in phrase.split()}
    | {"hi", "hey", "hello", "thanks", "thank", "thx", "ok", "okay", "please", "stop", "help", "number", "ticket"}
)

_TICKET_NUMBER_PATTERNS = (
    re.compile(r"\bticket(?![a-z])\s*(?:number|num|no\.?)?\s*[-#:]?\s*([a-z0-9][a-z0-9-]*)", re.IGNORECASE),
    re.compile(r"#\s*([a-z0-9][a-z0-9-]*)", re.IGNORECASE),
    re.compile(r"^\s*([a-z0-9][a-z0-9-]{2,})\s*[.!?]*\s*$", re.IGNORECASE),
)

MATCH_PHONE = "phone"
MATCH_NUMBER_AND_PHONE = "ticket_number_and_phone"
MATCH_NUMBER_ONLY = "ticket_number_only"


# =============================================================================
# TEXT HANDLING
# =============================================================================

def normalize_body(body: str | None) -> str:
    return " ".join((body or "").strip().lower().split())


def _keyword_regex(keywords) -> re.Pattern:
    alternatives = sorted((re.escape(k) for k in keywords), key=len, reverse=True)
    return re.compile(r"(?<![a-z0-9'])(?:" + "|".join(alternatives) + r")(?![a-z0-9'])")


_REQUEST_RE = _keyword_regex(REQUEST_KEYWORDS)
_YES_RE = _keyword_regex(RETURN_YES_KEYWORDS)
_NO_RE = _keyword_regex(RETURN_NO_KEYWORDS)


def extract_ticket_number(body: str | None) -> Optional[str]:
    """
    First plausible ticket-number token in `body`, or None.

    A candidate from the explicit patterns must contain a digit or be 3+
    characters; greetings and intent keywords are never taken as numbers.
    """
    text = (body or "").strip()
    if not text:
        return None
    for pattern in _TICKET_NUMBER_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        candidate = match.group(1).strip("-")
        if not candidate or candidate.lower() in _NON_TICKET_WORDS:
            continue
        if any(ch.isdigit() for ch in candidate) or len(candidate) > 2:
            return candidate
    return None


@dataclass(frozen=True)
class MessageIntent:
    pickup_request: bool
    affirmative: bool
    negative: bool

    @property
    def is_yes_no(self) -> bool:
        return self.affirmative or self.negative

    @property
    def says_will_return(self) -> bool:
        """Negative phrasing wins: "not returning" contains "returning"."""
        return self.affirmative and not self.negative

    def to_dict(self) -> dict:
        return {
            "pickup_request": self.pickup_request,
            "affirmative": self.affirmative,
            "negative": self.negative,
        }


def classify_intent(body: str | None) -> MessageIntent:
    text = normalize_body(body)
    negative = bool(_NO_RE.search(text))
    affirmative = bool(_YES_RE.search(text))
    # "no rush, bring it back later" is still a pickup request
    pickup = bool(_REQUEST_RE.search(text))
    return MessageIntent(pickup_request=pickup, affirmative=affirmative, negative=negative)


# =============================================================================
# TICKET RESOLUTION
# =============================================================================

@dataclass(frozen=True)
class TicketMatch:
    ticket: Ticket
    matched_by: str

    @property
    def low_confidence(self) -> bool:
        return self.matched_by == MATCH_NUMBER_ONLY


def _open_tickets():
    return db.session.query(Ticket).filter(Ticket.status.in_(OPEN_TICKET_STATUSES))


def _phone_filter(phone: ResolvedPhone):
    return or_(
        Ticket.customer_phone.in_(sorted(phone.variants)),
        Ticket.customer_phone_e164 == phone.canonical,
    )


def _number_filter(ticket_number: str):
    return func.lower(Ticket.ticket_number) == ticket_number.lower()


def find_ticket(phone: ResolvedPhone, ticket_number: Optional[str]) -> Optional[TicketMatch]:
    """Resolve the open ticket a message belongs to, most recent check-in first."""
    if phone:
        by_phone = _open_tickets().filter(_phone_filter(phone)).order_by(Ticket.check_in_time.desc()).all()
        if by_phone:
            if ticket_number:
                for ticket in by_phone:
                    if ticket.ticket_number.lower() == ticket_number.lower():
                        return TicketMatch(ticket, MATCH_NUMBER_AND_PHONE)
            return TicketMatch(by_phone[0], MATCH_PHONE)

    if not ticket_number:
        return None

    if phone:
        ticket = (
            _open_tickets()
            .filter(_number_filter(ticket_number), _phone_filter(phone))
            .order_by(Ticket.check_in_time.desc())
            .first()
        )
        if ticket:
            return TicketMatch(ticket, MATCH_NUMBER_AND_PHONE)

    ticket = _open_tickets().filter(_number_filter(ticket_number)).order_by(Ticket.check_in_time.desc()).first()
    if ticket:
        logger.warning(
            "Low-confidence inbound match: ticket %s matched by number only (sender %s)",
            ticket.ticket_number,
            mask_phone(phone.raw),
        )
        return TicketMatch(ticket, MATCH_NUMBER_ONLY)
    return None


@dataclass(frozen=True)
class InterpretedMessage:
    body: str
    phone: ResolvedPhone
    ticket_number: Optional[str]
    intent: MessageIntent
    match: Optional[TicketMatch]

    @property
    def ticket(self) -> Optional[Ticket]:
        return self.match.ticket if self.match else None


def interpret(body: str | None, sender: str | None) -> InterpretedMessage:
    text = (body or "").strip()
    phone = resolve_phone(sender)
    ticket_number = extract_ticket_number(text)
    match = find_ticket(phone, ticket_number)
    return InterpretedMessage(
        body=text,
        phone=phone,
        ticket_number=ticket_number,
        intent=classify_intent(text),
        match=match,
    )
