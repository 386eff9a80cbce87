"""
Ticket API tests.

Verifies:
- Unauthenticated requests return 401, staff cannot do privileged work (403)
- Check-in creates CHECKED_IN / WITH_US tickets and runs check-in automation
- PATCH is payment-gated and all-or-nothing
- Deletes keep the audit trail
- STAFF users bound to a location only see that location
"""

from datetime import timedelta

import pytest

from valet.models import AuditLog, Message, Payment, Ticket
from valet.models.payments import PAYMENT_COMPLETED, PAYMENT_LINK_SENT
from valet.models.tickets import (
    RATE_OVERNIGHT,
    STATUS_CHECKED_IN,
    STATUS_READY_FOR_PICKUP,
    VEHICLE_WITH_US,
)
from valet.services.audit_service import TICKET_CREATED, TICKET_DELETED, TICKET_UPDATED
from valet.services.providers import ProviderCapabilities
from valet.time_utils import to_utc_z, utcnow

from conftest import STAFF_TOKENS, auth_headers


def _new_ticket_payload(location, **overrides):
    payload = {
        "location_id": location.id,
        "ticket_number": "2001",
        "customer_name": "Riley",
        "customer_phone": "(312) 555-0177",
        "vehicle_make": "Toyota",
        "vehicle_model": "Camry",
        "rate_type": "HOURLY",
    }
    payload.update(overrides)
    return payload


# =============================================================================
# AUTH
# =============================================================================


class TestAuthentication:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/tickets"),
            ("POST", "/api/tickets"),
            ("PATCH", "/api/tickets/1"),
            ("DELETE", "/api/tickets/1"),
            ("GET", "/api/payments"),
            ("POST", "/api/payments/create-link"),
            ("GET", "/api/messages"),
            ("GET", "/api/locations"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_unknown_token(self, client, db_session):
        resp = client.get("/api/tickets", headers=auth_headers("nope"))
        assert resp.status_code == 401


# =============================================================================
# CREATE
# =============================================================================


class TestCreateTicket:

    def test_check_in_sends_initial_payment_link(self, client, db_session, providers, hampton, staff_headers):
        resp = client.post("/api/tickets", json=_new_ticket_payload(hampton), headers=staff_headers)

        assert resp.status_code == 201
        data = resp.get_json()
        assert data["ticket"]["status"] == STATUS_CHECKED_IN
        assert data["ticket"]["vehicle_status"] == VEHICLE_WITH_US
        assert data["ticket"]["projected_amount_cents"] == 2000
        assert data["automation"]["action"] == "initial_payment"

        ticket = db_session.get(Ticket, data["ticket"]["id"])
        assert ticket.customer_phone_e164 == "+13125550177"
        payment = db_session.query(Payment).filter_by(ticket_id=ticket.id).one()
        assert payment.status == PAYMENT_LINK_SENT
        assert "Thanks for using ValetPro at Hampton Inn!" in providers.sms.bodies()[-1]
        created = db_session.query(AuditLog).filter_by(ticket_id=ticket.id, action=TICKET_CREATED).one()
        assert created.actor == "Sam Staff"

    def test_welcome_text_without_payment_provider(self, client, db_session, providers, hampton, staff_headers):
        providers.capabilities = ProviderCapabilities(
            sms_configured=True, sms_disabled=False, payments_configured=False,
        )
        resp = client.post("/api/tickets", json=_new_ticket_payload(hampton), headers=staff_headers)

        assert resp.status_code == 201
        assert resp.get_json()["automation"] == {"action": "welcome", "sent": True}
        assert providers.sms.bodies()[-1].startswith("Hi Riley, welcome to ValetPro at Hampton Inn.")
        assert db_session.query(Payment).count() == 0

    def test_no_automation_without_sms(self, client, db_session, no_providers, hampton, staff_headers):
        resp = client.post("/api/tickets", json=_new_ticket_payload(hampton), headers=staff_headers)
        assert resp.status_code == 201
        assert resp.get_json()["automation"]["action"] == "none"

    def test_sms_failure_does_not_fail_check_in(self, client, db_session, providers, hampton, staff_headers):
        providers.sms.fail = True
        resp = client.post("/api/tickets", json=_new_ticket_payload(hampton), headers=staff_headers)
        assert resp.status_code == 201
        assert db_session.query(Ticket).count() == 1

    @pytest.mark.parametrize(
        "override",
        [
            {"status": STATUS_READY_FOR_PICKUP},
            {"vehicle_status": "AWAY"},
            {"will_return": True},
        ],
    )
    def test_lifecycle_fields_rejected_on_create(self, client, db_session, providers, hampton, staff_headers,
                                                 override):
        resp = client.post("/api/tickets", json=_new_ticket_payload(hampton, **override), headers=staff_headers)
        assert resp.status_code == 400
        assert db_session.query(Ticket).count() == 0

    @pytest.mark.parametrize(
        "override",
        [
            {"rate_type": "WEEKLY"},
            {"customer_phone": "call me"},
            {"duration_days": 2},
            {"duration_hours": 0},
            {"location_id": 999999},
            {"unexpected": "x"},
        ],
    )
    def test_invalid_input(self, client, db_session, no_providers, hampton, staff_headers, override):
        resp = client.post("/api/tickets", json=_new_ticket_payload(hampton, **override), headers=staff_headers)
        assert resp.status_code == 400

    def test_missing_required_fields(self, client, db_session, no_providers, hampton, staff_headers):
        resp = client.post("/api/tickets", json={"location_id": hampton.id}, headers=staff_headers)
        assert resp.status_code == 400
        assert "Missing required fields" in resp.get_json()["error"]

    def test_open_ticket_number_must_be_unique(self, client, db_session, no_providers, hampton, staff_headers):
        client.post("/api/tickets", json=_new_ticket_payload(hampton), headers=staff_headers)
        resp = client.post("/api/tickets", json=_new_ticket_payload(hampton), headers=staff_headers)
        assert resp.status_code == 409


# =============================================================================
# UPDATE
# =============================================================================


class TestUpdateTicket:

    def test_ready_requires_payment(self, client, db_session, providers, hampton, make_ticket, staff_headers):
        ticket = make_ticket(hampton, hours_ago=2)

        resp = client.patch(f"/api/tickets/{ticket.id}", json={"status": STATUS_READY_FOR_PICKUP}, headers=staff_headers)

        assert resp.status_code == 402
        assert resp.get_json()["outstanding_cents"] == 2000

    def test_rejected_status_rolls_back_other_fields(self, client, db_session, providers, hampton, make_ticket,
                                                     staff_headers):
        ticket = make_ticket(hampton, hours_ago=2)

        resp = client.patch(
            f"/api/tickets/{ticket.id}",
            json={"notes": "Keys in box 4", "status": STATUS_READY_FOR_PICKUP},
            headers=staff_headers,
        )

        assert resp.status_code == 402
        db_session.refresh(ticket)
        assert ticket.notes is None
        assert db_session.query(AuditLog).filter_by(ticket_id=ticket.id, action=TICKET_UPDATED).count() == 0

    def test_paid_ticket_moves_to_ready_with_diff(self, client, db_session, providers, hampton, make_ticket,
                                                  staff_headers):
        ticket = make_ticket(hampton, hours_ago=2)
        db_session.add(Payment(ticket_id=ticket.id, amount_cents=2000, status=PAYMENT_COMPLETED))
        db_session.commit()

        resp = client.patch(
            f"/api/tickets/{ticket.id}",
            json={"status": STATUS_READY_FOR_PICKUP, "parking_location": "P2-14"},
            headers=staff_headers,
        )

        assert resp.status_code == 200
        assert resp.get_json()["ticket"]["status"] == STATUS_READY_FOR_PICKUP
        entry = db_session.query(AuditLog).filter_by(ticket_id=ticket.id, action=TICKET_UPDATED).one()
        assert entry.actor == "Sam Staff"
        assert entry.details["changes"]["status"] == {"from": STATUS_CHECKED_IN, "to": STATUS_READY_FOR_PICKUP}
        assert entry.details["changes"]["parking_location"] == {"from": None, "to": "P2-14"}

    def test_longer_prepaid_stay_makes_ticket_unpaid(self, client, db_session, providers, hampton, make_ticket,
                                                     staff_headers):
        ticket = make_ticket(hampton, hours_ago=1)
        db_session.add(Payment(ticket_id=ticket.id, amount_cents=2000, status=PAYMENT_COMPLETED))
        db_session.commit()

        resp = client.patch(
            f"/api/tickets/{ticket.id}",
            json={"duration_hours": 6, "status": STATUS_READY_FOR_PICKUP},
            headers=staff_headers,
        )

        assert resp.status_code == 402
        assert resp.get_json()["outstanding_cents"] == 2600

    def test_departure_without_in_out_rejected(self, client, db_session, providers, hampton, make_ticket,
                                               staff_headers):
        ticket = make_ticket(hampton, hours_ago=1)
        db_session.add(Payment(ticket_id=ticket.id, amount_cents=2000, status=PAYMENT_COMPLETED))
        db_session.commit()

        resp = client.patch(f"/api/tickets/{ticket.id}", json={"vehicle_status": "AWAY"}, headers=staff_headers)

        assert resp.status_code == 402
        assert resp.get_json()["in_out_allowed"] is False

    def test_switching_rate_type_clears_other_duration(self, client, db_session, providers, hampton, make_ticket,
                                                       staff_headers):
        ticket = make_ticket(hampton, rate_type=RATE_OVERNIGHT, duration_days=2)

        resp = client.patch(
            f"/api/tickets/{ticket.id}",
            json={"rate_type": "HOURLY", "duration_hours": 3},
            headers=staff_headers,
        )

        assert resp.status_code == 200
        data = resp.get_json()["ticket"]
        assert data["duration_days"] is None
        assert data["duration_hours"] == 3
        assert data["projected_amount_cents"] == 2000

    def test_illegal_transition_conflicts(self, client, db_session, providers, hampton, make_ticket, staff_headers):
        ticket = make_ticket(hampton, status="CANCELLED")
        resp = client.patch(f"/api/tickets/{ticket.id}", json={"status": STATUS_CHECKED_IN}, headers=staff_headers)
        assert resp.status_code == 409

    def test_location_change_requires_privilege(self, client, db_session, providers, hampton, hyatt, make_ticket,
                                                staff_headers, manager_headers):
        ticket = make_ticket(hampton)

        denied = client.patch(f"/api/tickets/{ticket.id}", json={"location_id": hyatt.id}, headers=staff_headers)
        allowed = client.patch(f"/api/tickets/{ticket.id}", json={"location_id": hyatt.id}, headers=manager_headers)

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.get_json()["ticket"]["location_name"] == "Hyatt Regency"

    def test_empty_patch(self, client, db_session, providers, hampton, make_ticket, staff_headers):
        ticket = make_ticket(hampton)
        resp = client.patch(f"/api/tickets/{ticket.id}", json={}, headers=staff_headers)
        assert resp.status_code == 400

    def test_missing_ticket(self, client, db_session, providers, staff_headers):
        resp = client.patch("/api/tickets/999999", json={"notes": "x"}, headers=staff_headers)
        assert resp.status_code == 404


# =============================================================================
# DELETE / READ
# =============================================================================


class TestDeleteAndRead:

    def test_delete_requires_privilege(self, client, db_session, hampton, make_ticket, staff_headers):
        ticket = make_ticket(hampton)
        resp = client.delete(f"/api/tickets/{ticket.id}", headers=staff_headers)
        assert resp.status_code == 403

    def test_delete_keeps_audit_trail(self, client, db_session, providers, hampton, make_ticket, admin_headers):
        ticket = make_ticket(hampton)
        ticket_id = ticket.id
        db_session.add(Message(ticket_id=ticket_id, direction="INBOUND", body="ready"))
        db_session.add(Payment(ticket_id=ticket_id, amount_cents=2000, status=PAYMENT_COMPLETED))
        db_session.commit()

        resp = client.delete(f"/api/tickets/{ticket_id}", headers=admin_headers)

        assert resp.status_code == 200
        assert db_session.get(Ticket, ticket_id) is None
        assert db_session.query(Payment).count() == 0
        assert db_session.query(Message).count() == 0
        deleted = db_session.query(AuditLog).filter_by(action=TICKET_DELETED).one()
        assert deleted.ticket_id is None
        assert deleted.details["ticket_id"] == ticket_id
        assert deleted.details["amount_paid_cents"] == 2000
        assert deleted.actor == "Avery Admin"

    def test_get_ticket_summary(self, client, db_session, hampton, make_ticket, staff_headers):
        ticket = make_ticket(hampton, hours_ago=2)
        resp = client.get(f"/api/tickets/{ticket.id}", headers=staff_headers)

        data = resp.get_json()["ticket"]
        assert resp.status_code == 200
        assert data["outstanding_amount_cents"] == 2000
        assert data["has_in_out_privileges"] is False
        assert data["elapsed_hours"] == pytest.approx(2.0, abs=0.1)

    def test_audit_endpoint(self, client, db_session, providers, hampton, make_ticket, staff_headers):
        ticket = make_ticket(hampton)
        client.patch(f"/api/tickets/{ticket.id}", json={"notes": "Scratch on bumper"}, headers=staff_headers)

        resp = client.get(f"/api/tickets/{ticket.id}/audit", headers=staff_headers)

        assert resp.status_code == 200
        actions = [e["action"] for e in resp.get_json()["audit"]]
        assert TICKET_UPDATED in actions

    def test_list_with_filters_and_metrics(self, client, db_session, hampton, hyatt, make_ticket, staff_headers):
        make_ticket(hampton, customer_name="Alex")
        make_ticket(hampton, customer_name="Blair", license_plate="VALET1")
        make_ticket(hyatt, customer_name="Casey")

        resp = client.get(f"/api/tickets?location_id={hampton.id}", headers=staff_headers)
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["metrics"]["total"] == 2
        assert data["metrics"]["with_us"] == 2
        assert data["metrics"]["projected_revenue_cents"] == 4000

        resp = client.get("/api/tickets?search=valet1", headers=staff_headers)
        assert [t["customer_name"] for t in resp.get_json()["tickets"]] == ["Blair"]

        resp = client.get("/api/tickets?status=BOGUS", headers=staff_headers)
        assert resp.status_code == 400

    def test_check_in_time_round_trips_as_utc(self, client, db_session, no_providers, hampton, staff_headers):
        check_in = utcnow() - timedelta(hours=1)
        resp = client.post(
            "/api/tickets",
            json=_new_ticket_payload(hampton, check_in_time=to_utc_z(check_in)),
            headers=staff_headers,
        )
        assert resp.get_json()["ticket"]["check_in_time"] == to_utc_z(check_in)


class TestLocationRestrictedStaff:

    @pytest.fixture
    def lot_headers(self, app, hampton, monkeypatch):
        monkeypatch.setitem(app.config, "STAFF_TOKENS", f"{STAFF_TOKENS},lot-token:STAFF:Lee Lot:{hampton.id}")
        return auth_headers("lot-token")

    def test_sees_only_own_location(self, client, db_session, hampton, hyatt, make_ticket, lot_headers):
        own = make_ticket(hampton)
        other = make_ticket(hyatt)

        listed = client.get("/api/tickets", headers=lot_headers).get_json()["tickets"]
        assert [t["id"] for t in listed] == [own.id]
        assert client.get(f"/api/tickets/{other.id}", headers=lot_headers).status_code == 403
        assert client.get(f"/api/tickets?location_id={hyatt.id}", headers=lot_headers).status_code == 403

    def test_create_is_pinned_to_own_location(self, client, db_session, no_providers, hampton, hyatt, lot_headers):
        resp = client.post("/api/tickets", json=_new_ticket_payload(hyatt), headers=lot_headers)
        assert resp.status_code == 201
        assert resp.get_json()["ticket"]["location_id"] == hampton.id
