from datetime import datetime

import mongomock
import pytest

from app import create_app
from lifecycle import stock_flags
from paystack import InitializedTransaction, VerifiedTransaction
from reconciliation import ReconciliationEngine
from seed import ensure_admin_user
from storage import OrderStore, PaymentLinkStore, ProductCatalog, ensure_indexes

WEBHOOK_SECRET = "sk_test_webhook_secret"
ADMIN_EMAIL = "admin@nevellines.com"
ADMIN_PASSWORD = "s3cret-pass"


class FakeGateway:
    """In-memory stand-in for PaystackClient."""

    def __init__(self):
        self.initialized = []
        self.verify_calls = []
        self.results = {}
        self.errors = {}
        self.initialize_error = None

    def initialize_transaction(self, email, amount_minor_units, reference, callback_url,
                               metadata=None, currency="NGN", channels=None):
        if self.initialize_error is not None:
            raise self.initialize_error
        self.initialized.append(
            {
                "email": email,
                "amount_minor_units": amount_minor_units,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata,
                "currency": currency,
            }
        )
        return InitializedTransaction(
            authorization_url=f"https://checkout.paystack.com/{reference.lower()}",
            access_code=f"access-{reference}",
            reference=reference,
        )

    def set_result(self, reference, status, amount_minor_units=None, customer=None):
        if amount_minor_units is None:
            amount_minor_units = self.initialized_amount(reference)
        self.results[reference] = VerifiedTransaction(
            reference=reference,
            status=status,
            amount=amount_minor_units / 100,
            amount_minor_units=amount_minor_units,
            paid_at="2026-10-18T10:00:00.000Z" if status == "success" else None,
            customer=customer or {"email": "buyer@example.com"},
            metadata={},
            gateway_response="Approved" if status == "success" else "Declined",
        )

    def initialized_amount(self, reference):
        for call in self.initialized:
            if call["reference"] == reference:
                return call["amount_minor_units"]
        return 0

    def verify_transaction(self, reference):
        self.verify_calls.append(reference)
        if reference in self.errors:
            raise self.errors[reference]
        if reference in self.results:
            return self.results[reference]
        return VerifiedTransaction(reference, "pending", 0.0, 0, None, {}, {}, "")

    def list_transactions(self, per_page=None, page=None, status=None, from_date=None,
                          to_date=None):
        return [{"reference": ref} for ref in self.results], {"page": page or 1}

    def get_transaction(self, transaction_id):
        return {"id": transaction_id}


class FakeMailer:
    def __init__(self):
        self.confirmations = []
        self.status_updates = []

    def send_order_confirmation(self, data):
        self.confirmations.append(data)
        return True

    def send_status_update(self, customer_email, customer_name, order_number, old_status,
                           new_status):
        self.status_updates.append((customer_email, order_number, old_status, new_status))
        return True


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def catalog(db):
    return ProductCatalog(db.products)


@pytest.fixture
def order_store(db):
    return OrderStore(db.orders)


@pytest.fixture
def link_store(db):
    return PaymentLinkStore(db.payment_links)


@pytest.fixture
def engine(gateway, link_store, order_store, catalog, mailer):
    return ReconciliationEngine(
        gateway,
        link_store,
        order_store,
        catalog,
        mailer,
        webhook_secret=WEBHOOK_SECRET,
        frontend_url="https://shop.example.com",
    )


@pytest.fixture
def make_product(db):
    def _make_product(name="Product P", price=5000, quantity=10, badge=None):
        in_stock, badge = stock_flags(quantity, badge)
        document = {
            "name": name,
            "price": float(price),
            "quantity": quantity,
            "in_stock": in_stock,
            "active": True,
            "created_at": datetime.utcnow(),
        }
        if badge:
            document["badge"] = badge
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return _make_product


@pytest.fixture
def app(db, gateway, mailer):
    flask_app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-for-the-store-backend",
            "PAYSTACK_SECRET_KEY": WEBHOOK_SECRET,
            "FRONTEND_URL": "https://shop.example.com",
        },
        db=db,
        gateway=gateway,
        mailer=mailer,
    )
    ensure_admin_user(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    return flask_app


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def admin_headers(client):
    response = client.post(
        "/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.get_json()['token']}"}
