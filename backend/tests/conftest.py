"""
Pytest fixtures for OpsDesk backend tests.

Provides test database setup, two isolated businesses, fake outbound
collaborators (payment provider, message delivery) and the test client.
"""

from datetime import timedelta

import pytest

from opsdesk import create_app
from opsdesk.config import TestingConfig
from opsdesk.extensions import db
from opsdesk.models import Business, Customer, User
from opsdesk.clients import delivery, payment_gateway
from opsdesk.clients.delivery import DeliveryResult
from opsdesk.clients.payment_gateway import ChargeResult
from opsdesk.errors import UpstreamServiceError
from opsdesk.services.auth_service import hash_password
from opsdesk.services.appointment_service import create_appointment
from opsdesk.services.inventory_service import create_item
from opsdesk.time_utils import utcnow


TEST_PASSWORD = "Password123"


class FakeChargeClient:
    """Records charge requests; set fail=True to simulate a provider outage."""

    def __init__(self):
        self.calls = []
        self.fail = False

    def create_charge(self, amount, payer, metadata=None, expires_in_hours=24):
        if self.fail:
            raise UpstreamServiceError("Payment provider timeout after 10.0s")
        txid = f"fake-{len(self.calls) + 1}"
        self.calls.append({"amount": amount, "payer": payer, "metadata": metadata,
                           "expires_in_hours": expires_in_hours, "txid": txid})
        return ChargeResult(charge_id=txid, qr_payload=f"qr-{txid}", redirect_url=None)


class FakeDeliveryClient:
    """Records sent messages; set fail=True to make every send fail."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, channel, recipient, payload):
        if self.fail:
            return DeliveryResult(success=False, error="http 503")
        self.sent.append({"channel": channel, "recipient": recipient, "payload": payload})
        return DeliveryResult(success=True)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh database contents for each test."""
    # Clear all data but keep schema
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


@pytest.fixture(scope='function')
def fake_charges(app):
    client = FakeChargeClient()
    app.extensions[payment_gateway.EXTENSION_KEY] = client
    yield client
    app.extensions.pop(payment_gateway.EXTENSION_KEY, None)


@pytest.fixture(scope='function')
def fake_delivery(app):
    client = FakeDeliveryClient()
    app.extensions[delivery.EXTENSION_KEY] = client
    yield client
    app.extensions.pop(delivery.EXTENSION_KEY, None)


@pytest.fixture(scope='function')
def strict_stock(app):
    """Switch completion to all-or-nothing stock handling for one test."""
    app.config["COMPLETION_STRICT_STOCK"] = True
    yield
    app.config["COMPLETION_STRICT_STOCK"] = False


@pytest.fixture(scope='function')
def business_a(db_session):
    """Create Business A (first tenant)."""
    business = Business(name="Studio A", is_active=True)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def business_b(db_session):
    """Create Business B (second tenant)."""
    business = Business(name="Studio B", is_active=True)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def user_a(db_session, business_a):
    """Owner of Business A."""
    user = User(
        business_id=business_a.id,
        email="owner_a@studio-a.com",
        name="Owner A",
        password_hash=hash_password(TEST_PASSWORD),
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def user_b(db_session, business_b):
    """Owner of Business B."""
    user = User(
        business_id=business_b.id,
        email="owner_b@studio-b.com",
        name="Owner B",
        password_hash=hash_password(TEST_PASSWORD),
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def customer_a(db_session, business_a):
    customer = Customer(business_id=business_a.id, name="Maria Silva",
                        email="maria@example.com", phone="+5511999990000")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def customer_b(db_session, business_b):
    customer = Customer(business_id=business_b.id, name="Joao Souza", phone="+5511988880000")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def item_a(db_session, business_a):
    """Inventory item in Business A with 10 units on hand."""
    return create_item(business_a.id, name="Hair dye", unit="un", current_stock=10, minimum_stock=3)


@pytest.fixture(scope='function')
def appointment_a(db_session, business_a, customer_a):
    """Scheduled appointment priced 150.00 that ended an hour ago."""
    start = utcnow() - timedelta(hours=2)
    return create_appointment(
        business_a.id,
        customer_id=customer_a.id,
        title="Coloring",
        start_time=start,
        end_time=start + timedelta(hours=1),
        price="150.00",
    )


@pytest.fixture(scope='function')
def headers_a(client, user_a):
    """Bearer headers for the owner of Business A."""
    return auth_headers(get_auth_token(client, user_a.email))


@pytest.fixture(scope='function')
def headers_b(client, user_b):
    """Bearer headers for the owner of Business B."""
    return auth_headers(get_auth_token(client, user_b.email))


def get_auth_token(client, email: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
