"""
Inbound interpretation tests.

Verifies:
- ticket-number extraction ignores greetings and intent keywords
- keyword intent classification is whole-word and case-insensitive
- ticket lookup priority: phone, then number + phone, then number only
"""

import pytest

from valet.models.tickets import STATUS_COMPLETED
from valet.services.inbound_service import (
    MATCH_NUMBER_AND_PHONE,
    MATCH_NUMBER_ONLY,
    MATCH_PHONE,
    classify_intent,
    extract_ticket_number,
    interpret,
)


# =============================================================================
# TEXT
# =============================================================================


class TestTicketNumberExtraction:

    @pytest.mark.parametrize(
        "body,expected",
        [
            ("ticket 1042 ready", "1042"),
            ("Ticket #A17", "A17"),
            ("ready for pickup #1042", "1042"),
            ("1042", "1042"),
            ("  B-2201. ", "B-2201"),
            ("ticket number: 88", "88"),
            ("ticket#1042 please", "1042"),
        ],
    )
    def test_extracts(self, body, expected):
        assert extract_ticket_number(body) == expected

    @pytest.mark.parametrize("body", ["Hi", "yes", "ready", "ready for pickup", "", None, "ok", "thanks"])
    def test_ignores_greetings_and_keywords(self, body):
        assert extract_ticket_number(body) is None

    @pytest.mark.parametrize("body", ["Ticketing question", "my ticketing app is broken"])
    def test_ticket_prefix_needs_word_boundary(self, body):
        assert extract_ticket_number(body) is None


class TestIntent:

    @pytest.mark.parametrize(
        "body",
        ["Ready", "can I get my CAR", "please bring it around", "pick up please", "Pick-up"],
    )
    def test_pickup_requests(self, body):
        assert classify_intent(body).pickup_request is True

    def test_plain_yes(self):
        intent = classify_intent("Yes")
        assert intent.affirmative and not intent.negative
        assert intent.is_yes_no and intent.says_will_return
        assert not intent.pickup_request

    def test_not_returning_is_negative(self):
        intent = classify_intent("NOT RETURNING")
        assert intent.negative is True
        assert intent.says_will_return is False

    def test_whole_words_only(self):
        # "card" is not "car", "yesterday" is not "yes", "know" is not "no"
        intent = classify_intent("I know I paid by card yesterday")
        assert not intent.pickup_request
        assert not intent.affirmative
        assert not intent.negative

    def test_pickup_and_negative_coexist(self):
        intent = classify_intent("no rush, bring the car")
        assert intent.pickup_request and intent.negative


# =============================================================================
# LOOKUP
# =============================================================================


class TestInterpret:

    def test_matches_by_phone_variant(self, db_session, hampton, make_ticket):
        ticket = make_ticket(hampton, customer_phone="312-555-0100")
        result = interpret("ready", "+13125550100")
        assert result.ticket.id == ticket.id
        assert result.match.matched_by == MATCH_PHONE
        assert result.intent.pickup_request

    def test_prefers_quoted_number_among_phone_matches(self, db_session, hampton, make_ticket):
        first = make_ticket(hampton, ticket_number="1001", hours_ago=3)
        make_ticket(hampton, ticket_number="1002", hours_ago=1)
        result = interpret("ticket 1001 ready", "+13125550100")
        assert result.ticket.id == first.id
        assert result.match.matched_by == MATCH_NUMBER_AND_PHONE

    def test_most_recent_check_in_wins_without_number(self, db_session, hampton, make_ticket):
        make_ticket(hampton, ticket_number="1001", hours_ago=3)
        newer = make_ticket(hampton, ticket_number="1002", hours_ago=1)
        assert interpret("ready", "+13125550100").ticket.id == newer.id

    def test_number_only_is_low_confidence(self, db_session, hampton, make_ticket):
        ticket = make_ticket(hampton, ticket_number="7788", customer_phone="(212) 555-0199")
        result = interpret("ticket 7788", "+13125550100")
        assert result.ticket.id == ticket.id
        assert result.match.matched_by == MATCH_NUMBER_ONLY
        assert result.match.low_confidence

    def test_closed_tickets_never_match(self, db_session, hampton, make_ticket):
        make_ticket(hampton, ticket_number="5555", status=STATUS_COMPLETED)
        assert interpret("ticket 5555 ready", "+13125550100").ticket is None

    def test_no_partial_phone_matching(self, db_session, hampton, make_ticket):
        make_ticket(hampton, customer_phone="(312) 555-0100")
        assert interpret("ready", "+14125550100").ticket is None
