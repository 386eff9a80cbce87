"""
Pytest fixtures for valet backend tests.

Provides the app on an in-memory database, per-test table cleanup, fake SMS
and payment gateways installed in place of the real providers, and
location/ticket factories.
"""

import itertools
import json
from datetime import timedelta

import pytest

from valet import create_app
from valet.errors import ProviderUnavailableError, ValidationError
from valet.extensions import db
from valet.models import Location, Ticket
from valet.models.tickets import RATE_HOURLY
from valet.services.location_service import SEED_LOCATIONS
from valet.services.phone_service import normalize_phone
from valet.services.providers import (
    EXTENSION_KEY,
    PAYMENT_PROVIDER,
    SMS_PROVIDER,
    CreatedLink,
    CreatedRefund,
    ProviderBundle,
    ProviderCapabilities,
    SentMessage,
)
from valet.time_utils import utcnow


STAFF_TOKENS = ",".join([
    "admin-token:ADMIN:Avery Admin",
    "manager-token:MANAGER:Morgan Manager",
    "staff-token:STAFF:Sam Staff",
])

CUSTOMER_PHONE = "(312) 555-0100"


# =============================================================================
# FAKE PROVIDERS
# =============================================================================

class FakeSmsGateway:
    """Records every text instead of calling the carrier."""

    def __init__(self):
        self.sent = []
        self.fail = False
        self._ids = itertools.count(1)

    def send(self, to, body):
        if self.fail:
            raise ProviderUnavailableError(SMS_PROVIDER, "SMS provider is unreachable.")
        self.sent.append({"to": normalize_phone(to), "body": body})
        return SentMessage(provider_message_id=f"SM{next(self._ids):04d}", status="queued")

    def bodies(self):
        return [m["body"] for m in self.sent]


class FakePaymentGateway:
    """Hands out checkout sessions and refunds from memory."""

    def __init__(self):
        self.links = []
        self.refunds = []
        self.fail_links = False
        self.fail_refunds = False
        self._ids = itertools.count(1)

    def create_link(self, *, amount_cents, description, metadata):
        if self.fail_links:
            raise ProviderUnavailableError(PAYMENT_PROVIDER, "Payment provider error while creating link.")
        n = next(self._ids)
        link = CreatedLink(link_id=f"cs_test_{n}", url=f"https://pay.example.com/c/cs_test_{n}")
        self.links.append({"link": link, "amount_cents": amount_cents, "description": description, "metadata": metadata})
        return link

    def resolve_payment_intent(self, link_id):
        return f"pi_for_{link_id}"

    def refund(self, *, payment_intent_id, amount_cents, metadata):
        if self.fail_refunds:
            raise ProviderUnavailableError(PAYMENT_PROVIDER, "Payment provider error while refunding.")
        refund = CreatedRefund(refund_id=f"re_test_{len(self.refunds) + 1}", status="succeeded")
        self.refunds.append({"payment_intent_id": payment_intent_id, "amount_cents": amount_cents})
        return refund

    def construct_event(self, payload, signature):
        if signature == "bad-signature":
            raise ValidationError("Invalid webhook signature")
        try:
            return json.loads(payload)
        except ValueError as e:
            raise ValidationError("Invalid webhook payload") from e


# =============================================================================
# APP / DATABASE
# =============================================================================

@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STAFF_TOKENS': STAFF_TOKENS,
        'BRAND_NAME': 'ValetPro',
        'TWILIO_FROM_NUMBER': '+13125559999',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def providers(app):
    """Fresh fake gateways, both providers usable."""
    bundle = ProviderBundle(
        capabilities=ProviderCapabilities(
            sms_configured=True,
            sms_disabled=False,
            payments_configured=True,
            webhook_secret_configured=True,
        ),
        sms=FakeSmsGateway(),
        payments=FakePaymentGateway(),
    )
    previous = app.extensions.get(EXTENSION_KEY)
    app.extensions[EXTENSION_KEY] = bundle
    yield bundle
    app.extensions[EXTENSION_KEY] = previous


@pytest.fixture(scope='function')
def no_providers(providers):
    """Neither SMS nor payment links available."""
    providers.capabilities = ProviderCapabilities(
        sms_configured=False,
        sms_disabled=False,
        payments_configured=False,
    )
    return providers


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture(scope='function')
def hampton(db_session):
    """Hampton Inn: <=3h $20 (no in/out), unlimited $46 (in/out), overnight $46."""
    location = Location(**SEED_LOCATIONS[0])
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def hyatt(db_session):
    location = Location(**SEED_LOCATIONS[1])
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def make_ticket(db_session):
    """Factory: make_ticket(location, hours_ago=2, **fields) -> committed Ticket."""
    numbers = itertools.count(1001)

    def _make(location, *, hours_ago=2, **fields):
        phone = fields.pop("customer_phone", CUSTOMER_PHONE)
        values = {
            "location_id": location.id,
            "ticket_number": str(next(numbers)),
            "customer_name": "Jordan",
            "customer_phone": phone,
            "customer_phone_e164": normalize_phone(phone),
            "vehicle_make": "Honda",
            "vehicle_model": "Civic",
            "rate_type": RATE_HOURLY,
            "check_in_time": utcnow() - timedelta(hours=hours_ago),
        }
        values.update(fields)
        ticket = Ticket(**values)
        db_session.add(ticket)
        db_session.commit()
        return ticket

    return _make


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_headers():
    return auth_headers("admin-token")


@pytest.fixture
def manager_headers():
    return auth_headers("manager-token")


@pytest.fixture
def staff_headers():
    return auth_headers("staff-token")
