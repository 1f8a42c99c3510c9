"""
Pytest fixtures for the order ledger backend.

Provides the test database, tenant/customer/order fixtures, a scripted
payment gateway, and the Flask test client.
"""

import itertools

import pytest

from chariot import create_app
from chariot.extensions import db
from chariot.models import Company, Location, Customer
from chariot.services import order_service
from chariot.services.gateway import (
    STATUS_PENDING,
    STATUS_SUCCEEDED,
    ChargeResult,
    GatewayRejected,
    GatewayTimeout,
    PaymentGateway,
    RefundResult,
    set_gateway,
)
from chariot.services.order_service import LineItemDraft


class FakeGateway(PaymentGateway):
    """
    In-memory gateway with provider-style idempotency.

    charge_status / refund_status decide what new charges and refunds
    report. Queue exceptions in `errors` to make the next calls raise them.
    drop_responses makes the next create_charge calls succeed at the
    provider but time out on the way back.
    """

    name = "fake"

    def __init__(self):
        self.charge_status = STATUS_SUCCEEDED
        self.refund_status = STATUS_SUCCEEDED
        self.errors = []
        self.drop_responses = 0
        self.intents = {}
        self.refunds = {}
        self.customers = {}
        self.calls = []
        self._by_key = {}
        self._seq = itertools.count(1)

    def _maybe_raise(self):
        if self.errors:
            raise self.errors.pop(0)

    def create_charge(self, amount_cents, customer_ref, metadata=None, idempotency_key=None):
        self.calls.append(("create_charge", amount_cents, idempotency_key))
        self._maybe_raise()
        if idempotency_key and idempotency_key in self._by_key:
            return self.intents[self._by_key[idempotency_key]]
        intent_id = f"pi_{next(self._seq)}"
        result = ChargeResult(intent_id=intent_id, status=self.charge_status, amount_cents=amount_cents)
        self.intents[intent_id] = result
        if idempotency_key:
            self._by_key[idempotency_key] = intent_id
        if self.drop_responses:
            self.drop_responses -= 1
            raise GatewayTimeout("response lost")
        return result

    def create_intent(self, amount_cents, customer_ref, metadata=None, idempotency_key=None):
        self.calls.append(("create_intent", amount_cents, customer_ref))
        self._maybe_raise()
        if idempotency_key and idempotency_key in self._by_key:
            return self.intents[self._by_key[idempotency_key]]
        intent_id = f"pi_{next(self._seq)}"
        result = ChargeResult(
            intent_id=intent_id,
            status=STATUS_PENDING,
            amount_cents=amount_cents,
            raw_status="requires_payment_method",
            client_secret=f"{intent_id}_secret_test",
        )
        self.intents[intent_id] = result
        if idempotency_key:
            self._by_key[idempotency_key] = intent_id
        return result

    def create_customer(self, name, email=None, metadata=None):
        self.calls.append(("create_customer", name, email))
        self._maybe_raise()
        ref = f"cus_{next(self._seq)}"
        self.customers[ref] = {"name": name, "email": email, "metadata": metadata or {}}
        return ref

    def get_status(self, intent_id):
        self.calls.append(("get_status", intent_id))
        self._maybe_raise()
        if intent_id not in self.intents:
            raise GatewayRejected(f"No such payment_intent: {intent_id}")
        return self.intents[intent_id]

    def create_refund(self, intent_id, reason=None, amount_cents=None, idempotency_key=None):
        self.calls.append(("create_refund", intent_id, amount_cents, idempotency_key))
        self._maybe_raise()
        if idempotency_key and idempotency_key in self._by_key:
            return self.refunds[self._by_key[idempotency_key]]
        refund_id = f"re_{next(self._seq)}"
        amount = amount_cents if amount_cents is not None else self.intents[intent_id].amount_cents
        result = RefundResult(refund_id=refund_id, status=self.refund_status, amount_cents=amount)
        self.refunds[refund_id] = result
        if idempotency_key:
            self._by_key[idempotency_key] = refund_id
        return result

    def get_refund(self, refund_id):
        self.calls.append(("get_refund", refund_id))
        self._maybe_raise()
        return self.refunds[refund_id]

    # Test controls

    def settle_intent(self, intent_id, status):
        current = self.intents[intent_id]
        self.intents[intent_id] = ChargeResult(intent_id, status, current.amount_cents)

    def settle_refund(self, refund_id, status):
        current = self.refunds[refund_id]
        self.refunds[refund_id] = RefundResult(refund_id, status, current.amount_cents)

    def add_intent(self, intent_id, amount_cents, status=STATUS_SUCCEEDED):
        self.intents[intent_id] = ChargeResult(intent_id, status, amount_cents)

    def count(self, method):
        return sum(1 for call in self.calls if call[0] == method)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STRIPE_SECRET_KEY': 'sk_test_unused',
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
def gateway(app):
    """Scripted gateway installed as the app's payment gateway."""
    fake = FakeGateway()
    set_gateway(app, fake)
    yield fake
    app.extensions.pop('payment_gateway', None)


@pytest.fixture(scope='function')
def company(db_session):
    company = Company(name="Harbor Marine", code="HARBOR")
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture(scope='function')
def location(db_session, company):
    location = Location(company_id=company.id, name="Main Yard", code="MAIN")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def customer(db_session, company, location):
    customer = Customer(
        company_id=company.id,
        location_id=location.id,
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
        gateway_customer_ref="cus_test_1",
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def exempt_customer(db_session, company, location):
    customer = Customer(
        company_id=company.id,
        location_id=location.id,
        company_name="Harbor Patrol",
        tax_exempt=True,
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def make_order(db_session, company, location, customer):
    """Factory: order with optional line item payloads, totals computed."""
    def _make(lines=(), customer_id=None, **order_fields):
        order = order_service.create_order(
            company_id=company.id,
            location_id=location.id,
            customer_id=customer_id or customer.id,
            **order_fields,
        )
        for payload in lines:
            order_service.add_line_item(order.id, LineItemDraft.from_payload(payload))
        db_session.refresh(order)
        return order
    return _make


@pytest.fixture(scope='function')
def order_14300(make_order):
    """
    $100 fixed-price labor taxed 8% plus $50 of non-taxable parts, with a
    10% order discount: subtotal 15000, discount 1500, tax 800, total 14300.
    """
    return make_order(
        lines=[
            {"name": "Engine service", "pricing": "fixed_price", "fixed_price_cents": 10000, "tax_percent": "8"},
            {"name": "Filters", "pricing": "parts_cost", "parts_cost_cents": 5000, "quantity": 1, "taxable": False},
        ],
        discount_bps=1000,
    )


@pytest.fixture(scope='function')
def order_20000(make_order):
    """Single $200 fixed-price line, no tax."""
    return make_order(lines=[{"name": "Bottom paint", "fixed_price_cents": 20000}])
