"""
Inbound SMS automation tests.

Verifies:
- the decision table (first matching row wins)
- unpaid pickup request -> payment link for the balance, status unchanged
- paid pickup request -> READY_FOR_PICKUP + acknowledgement (+ return
  question for in/out tickets)
- redelivered messages and repeated webhooks never act twice
- provider failures never lose the inbound message
"""

import json
from datetime import timedelta

import pytest

from valet.models import AuditLog, Message, Payment
from valet.models.messages import DELIVERY_FAILED, DIRECTION_INBOUND, DIRECTION_OUTBOUND
from valet.models.payments import PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_LINK_SENT
from valet.models.tickets import (
    RATE_OVERNIGHT,
    STATUS_CHECKED_IN,
    STATUS_READY_FOR_PICKUP,
    VEHICLE_AWAY,
    VEHICLE_WITH_US,
)
from valet.services import automation_service
from valet.services.audit_service import AUTOMATION_NOTE, MESSAGE_RECEIVED, STATUS_CHANGED
from valet.services.automation_service import (
    ACTION_MARK_READY,
    ACTION_NONE,
    ACTION_NOTE,
    ACTION_RECORD_RETURN,
    ACTION_SEND_PAYMENT_LINK,
    OUTCOME_DUPLICATE,
    OUTCOME_UNMATCHED,
    decide_action,
)
from valet.services.inbound_service import MessageIntent


SENDER = "+13125550100"

PICKUP = MessageIntent(pickup_request=True, affirmative=False, negative=False)
YES = MessageIntent(pickup_request=False, affirmative=True, negative=False)
NO = MessageIntent(pickup_request=False, affirmative=False, negative=True)
CHATTER = MessageIntent(pickup_request=False, affirmative=False, negative=False)


def _inbound(body, sid=None, sender=SENDER):
    return automation_service.handle_inbound_message(
        body=body,
        sender=sender,
        provider_message_id=sid,
        recipient="+13125559999",
    )


def _checkout_completed(payment, event_id="evt_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": payment.provider_link_id,
                "payment_status": "paid",
                "payment_intent": "pi_123",
                "customer": "cus_9",
                "metadata": {"ticket_id": str(payment.ticket_id), "payment_id": str(payment.id)},
            }
        },
    }


def _post_webhook(client, event):
    return client.post(
        "/api/webhooks/stripe",
        data=json.dumps(event),
        headers={"Stripe-Signature": "t=1,v1=ok", "Content-Type": "application/json"},
    )


# =============================================================================
# DECISION TABLE
# =============================================================================


class TestDecideAction:

    def _decide(self, intent, *, status=STATUS_CHECKED_IN, vehicle=VEHICLE_WITH_US, will_return=None,
                in_out=False, settled=False):
        return decide_action(
            status=status,
            vehicle_status=vehicle,
            will_return=will_return,
            in_out_allowed=in_out,
            settled=settled,
            intent=intent,
        )

    def test_return_answer_when_question_pending(self):
        decision = self._decide(NO, status=STATUS_READY_FOR_PICKUP, in_out=True, settled=True)
        assert decision.action == ACTION_RECORD_RETURN
        assert decision.will_return is False

    def test_return_answer_beats_payment_link(self):
        decision = self._decide(YES, status=STATUS_READY_FOR_PICKUP, in_out=True, settled=False)
        assert decision.action == ACTION_RECORD_RETURN
        assert decision.will_return is True

    @pytest.mark.parametrize("intent", [PICKUP, YES])
    def test_unpaid_request_sends_link(self, intent):
        assert self._decide(intent).action == ACTION_SEND_PAYMENT_LINK

    @pytest.mark.parametrize("intent", [PICKUP, YES])
    def test_paid_request_marks_ready(self, intent):
        assert self._decide(intent, settled=True).action == ACTION_MARK_READY

    def test_already_ready_does_nothing(self):
        decision = self._decide(PICKUP, status=STATUS_READY_FOR_PICKUP, settled=True, will_return=True, in_out=True)
        assert decision.action == ACTION_NONE
        assert decision.reason == "already_ready"

    def test_vehicle_away_is_noted(self):
        assert self._decide(PICKUP, vehicle=VEHICLE_AWAY, settled=True, in_out=True).action == ACTION_NOTE

    def test_bare_no_with_in_out_is_noted(self):
        assert self._decide(NO, in_out=True).action == ACTION_NOTE

    def test_bare_no_without_in_out_does_nothing(self):
        assert self._decide(NO).action == ACTION_NONE

    def test_chatter_does_nothing(self):
        assert self._decide(CHATTER, in_out=True, settled=True).action == ACTION_NONE


# =============================================================================
# END-TO-END SCENARIOS
# =============================================================================


class TestUnpaidPickupRequest:

    def test_sends_payment_link_for_balance(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton, hours_ago=2)

        outcome = _inbound("ready for pickup", sid="SM1")

        assert outcome.action == ACTION_SEND_PAYMENT_LINK
        assert outcome.ticket_id == ticket.id
        db_session.refresh(ticket)
        assert ticket.status == STATUS_CHECKED_IN

        payment = db_session.query(Payment).filter_by(ticket_id=ticket.id).one()
        assert payment.amount_cents == 2000
        assert payment.status == PAYMENT_LINK_SENT
        assert payment.provider_link_id == "cs_test_1"

        assert len(providers.payments.links) == 1
        assert providers.payments.links[0]["metadata"]["ticket_id"] == ticket.id
        body = providers.sms.bodies()[-1]
        assert "Total due: $20.00" in body
        assert "https://pay.example.com/c/cs_test_1" in body

    def test_inbound_written_before_automation(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton)
        _inbound("ready", sid="SM1")

        inbound = db_session.query(Message).filter_by(ticket_id=ticket.id, direction=DIRECTION_INBOUND).one()
        assert inbound.body == "ready"
        assert inbound.message_metadata["provider_message_id"] == "SM1"
        assert inbound.message_metadata["matched_by"] == "phone"
        audit = db_session.query(AuditLog).filter_by(ticket_id=ticket.id, action=MESSAGE_RECEIVED).one()
        assert audit.details["message_id"] == inbound.id

    def test_second_request_resends_existing_link(self, db_session, providers, hampton, make_ticket):
        make_ticket(hampton)
        _inbound("ready", sid="SM1")
        _inbound("can you bring my car", sid="SM2")

        assert len(providers.payments.links) == 1
        assert db_session.query(Payment).count() == 1
        assert sum("Pay here" in b for b in providers.sms.bodies()) == 2

    def test_link_failure_keeps_inbound_message(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton)
        providers.payments.fail_links = True

        outcome = _inbound("ready", sid="SM1")

        assert outcome.action == ACTION_SEND_PAYMENT_LINK
        assert outcome.reason
        assert db_session.query(Message).filter_by(ticket_id=ticket.id, direction=DIRECTION_INBOUND).count() == 1
        assert db_session.query(Payment).one().status == PAYMENT_FAILED
        assert providers.sms.sent == []

    def test_sms_failure_leaves_link_open_for_resend(self, db_session, providers, hampton, make_ticket):
        make_ticket(hampton)
        providers.sms.fail = True
        _inbound("ready", sid="SM1")

        payment = db_session.query(Payment).one()
        assert payment.link_url is not None
        assert payment.status != PAYMENT_LINK_SENT

        providers.sms.fail = False
        _inbound("ready please", sid="SM2")
        db_session.refresh(payment)
        assert payment.status == PAYMENT_LINK_SENT
        assert len(providers.payments.links) == 1

    def test_providers_unavailable_is_swallowed(self, db_session, no_providers, hampton, make_ticket):
        ticket = make_ticket(hampton)
        outcome = _inbound("ready", sid="SM1")

        assert outcome.action == ACTION_SEND_PAYMENT_LINK
        assert db_session.query(Payment).count() == 0
        assert db_session.query(Message).filter_by(ticket_id=ticket.id).count() == 1


class TestPaidPickupRequest:

    def test_full_flow_webhook_twice_then_yes(self, client, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton, hours_ago=2)
        _inbound("ready for pickup", sid="SM1")
        payment = db_session.query(Payment).one()

        first = _post_webhook(client, _checkout_completed(payment, "evt_1"))
        second = _post_webhook(client, _checkout_completed(payment, "evt_1"))
        assert first.status_code == 200 and first.get_json()["handled"] is True
        assert second.status_code == 200 and second.get_json()["handled"] is False

        db_session.refresh(payment)
        assert payment.status == PAYMENT_COMPLETED
        assert payment.payment_metadata["payment_intent_id"] == "pi_123"
        confirmations = [b for b in providers.sms.bodies() if b.startswith("Payment confirmed!")]
        assert len(confirmations) == 1

        outcome = _inbound("yes", sid="SM2")
        assert outcome.action == ACTION_MARK_READY
        db_session.refresh(ticket)
        assert ticket.status == STATUS_READY_FOR_PICKUP

        again = _inbound("I'm ready", sid="SM3")
        assert again.action == ACTION_NONE
        transitions = db_session.query(AuditLog).filter_by(ticket_id=ticket.id, action=STATUS_CHANGED).count()
        assert transitions == 1
        assert len(providers.payments.links) == 1

    def test_ack_without_return_question_for_short_stay(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton, hours_ago=1)
        db_session.add(Payment(ticket_id=ticket.id, amount_cents=2000, status=PAYMENT_COMPLETED))
        db_session.commit()

        outcome = _inbound("ready", sid="SM1")

        assert outcome.action == ACTION_MARK_READY
        assert outcome.notifications == ["pickup_acknowledgement"]
        assert "being prepared for pickup" in providers.sms.bodies()[-1]

    def test_in_out_ticket_gets_return_question_then_answer(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton, rate_type=RATE_OVERNIGHT, hours_ago=5)
        db_session.add(Payment(ticket_id=ticket.id, amount_cents=4600, status=PAYMENT_COMPLETED))
        db_session.commit()

        outcome = _inbound("bring my car", sid="SM1")
        assert outcome.notifications == ["pickup_acknowledgement", "return_confirmation_question"]
        assert providers.sms.bodies()[-1] == automation_service.RETURN_QUESTION

        answer = _inbound("Not returning", sid="SM2")
        assert answer.action == ACTION_RECORD_RETURN
        db_session.refresh(ticket)
        assert ticket.will_return is False
        assert providers.sms.bodies()[-1] == automation_service.RETURN_NO_ACK

        later = _inbound("no", sid="SM3")
        assert later.action == ACTION_NOTE
        assert db_session.query(AuditLog).filter_by(ticket_id=ticket.id, action=AUTOMATION_NOTE).count() == 1

    def test_ack_failure_does_not_undo_transition(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton, hours_ago=1)
        db_session.add(Payment(ticket_id=ticket.id, amount_cents=2000, status=PAYMENT_COMPLETED))
        db_session.commit()
        providers.sms.fail = True

        outcome = _inbound("ready", sid="SM1")

        assert outcome.action == ACTION_MARK_READY
        assert outcome.notifications == []
        db_session.refresh(ticket)
        assert ticket.status == STATUS_READY_FOR_PICKUP
        failed = db_session.query(Message).filter_by(ticket_id=ticket.id, direction=DIRECTION_OUTBOUND).one()
        assert failed.delivery_status == DELIVERY_FAILED


class TestRedelivery:

    def test_same_message_sid_is_duplicate(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton)
        first = _inbound("ready", sid="SM1")
        second = _inbound("ready", sid="SM1")

        assert second.action == OUTCOME_DUPLICATE
        assert second.duplicate_of == first.message_id
        assert len(providers.payments.links) == 1
        assert sum("Pay here" in b for b in providers.sms.bodies()) == 1
        assert db_session.query(Message).filter_by(ticket_id=ticket.id, direction=DIRECTION_INBOUND).count() == 2

    def test_resend_without_sid_is_duplicate(self, db_session, providers, hampton, make_ticket):
        make_ticket(hampton)
        first = _inbound("ready")
        second = _inbound("ready")

        assert second.action == OUTCOME_DUPLICATE
        assert second.duplicate_of == first.message_id
        assert len(providers.payments.links) == 1

    @pytest.mark.parametrize("body", ["yes", "ready"])
    def test_new_sid_with_same_body_is_acted_on(self, client, db_session, providers, hampton, make_ticket, body):
        ticket = make_ticket(hampton, hours_ago=2)
        first = _inbound(body, sid="SM1")
        assert first.action == ACTION_SEND_PAYMENT_LINK

        payment = db_session.query(Payment).one()
        assert _post_webhook(client, _checkout_completed(payment)).get_json()["handled"] is True

        second = _inbound(body, sid="SM2")

        assert second.action == ACTION_MARK_READY
        assert second.duplicate_of is None
        db_session.refresh(ticket)
        assert ticket.status == STATUS_READY_FOR_PICKUP

    def test_sid_match_ignores_window(self, db_session, providers, hampton, make_ticket):
        ticket = make_ticket(hampton)
        first = _inbound("ready", sid="SM1")
        inbound = db_session.get(Message, first.message_id)
        inbound.sent_at = inbound.sent_at - timedelta(hours=1)
        db_session.commit()

        assert _inbound("ready", sid="SM1").action == OUTCOME_DUPLICATE
        assert db_session.query(Message).filter_by(ticket_id=ticket.id, direction=DIRECTION_INBOUND).count() == 2

    def test_unmatched_message_is_dropped(self, db_session, providers, hampton, make_ticket):
        make_ticket(hampton)
        outcome = _inbound("ready", sid="SM1", sender="+14155550123")

        assert outcome.action == OUTCOME_UNMATCHED
        assert db_session.query(Message).count() == 0
        assert providers.sms.sent == []

    @pytest.mark.parametrize("sender", ["", None])
    def test_missing_sender_is_dropped(self, db_session, providers, hampton, make_ticket, sender):
        ticket = make_ticket(hampton)
        outcome = _inbound(f"ticket {ticket.ticket_number} ready", sid="SM1", sender=sender)

        assert outcome.action == OUTCOME_UNMATCHED
        assert db_session.query(Message).count() == 0
        assert db_session.query(Payment).count() == 0


class TestInboundWebhookRoute:

    def test_always_answers_empty_twiml(self, client, db_session, providers, hampton, make_ticket):
        make_ticket(hampton)
        resp = client.post(
            "/api/messages/inbound",
            data={"From": SENDER, "To": "+13125559999", "Body": "ready", "MessageSid": "SM1"},
        )
        assert resp.status_code == 200
        assert resp.mimetype == "text/xml"
        assert resp.get_data(as_text=True) == "<Response></Response>"
        assert db_session.query(Payment).count() == 1

    def test_unmatched_still_200(self, client, db_session, providers):
        resp = client.post("/api/messages/inbound", data={"From": "+14155550123", "Body": "hello"})
        assert resp.status_code == 200
        assert resp.get_data(as_text=True) == "<Response></Response>"
