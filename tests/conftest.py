import datetime as dt
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from storefront import tracking
from storefront.checkout import CheckoutService
from storefront.config import Settings
from storefront.coupons import CouponValidator
from storefront.database import build_engine, build_session_factory, init_db
from storefront.errors import PaymentProviderError
from storefront.inventory import ReservationManager
from storefront.main import create_app
from storefront.models import Coupon, Product, VariantStock
from storefront.notifications import Notifier
from storefront.orders import create_order_row
from storefront.payments import WebhookProcessor

WEBHOOK_SECRET = "sk_test_3f9a1c"
ADMIN_PASSWORD = "admin-pass-123"
START = dt.datetime(2026, 3, 2, 12, 0, tzinfo=dt.timezone.utc)

TEE = "tee-classic"
HOODIE = "hoodie-zip"

SEED_STOCK = {
    (TEE, "Black-M"): 10,
    (TEE, "White-L"): 3,
    (TEE, "Black-S"): 0,
    (HOODIE, "Grey-M"): 5,
}


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + dt.timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def __call__(self, routing_key, payload):
        self.events.append((routing_key, payload))

    def keys(self):
        return [key for key, _ in self.events]


class FakePaymentProvider:
    def __init__(self):
        self.calls = []
        self.fail = False

    def initialize_transaction(self, order_id, email, amount):
        self.calls.append({"order_id": order_id, "email": email, "amount": amount})
        if self.fail:
            raise PaymentProviderError("Paystack initialization failed")
        return {
            "reference": f"ps_{order_id}",
            "authorization_url": f"https://checkout.paystack.test/{order_id}",
            "access_code": "ac_test",
            "publicKey": "pk_test",
        }


class RecordingTracker:
    def __init__(self):
        self.exceptions = []
        self.messages = []

    def capture_exception(self, exc, **context):
        self.exceptions.append((exc, context))

    def capture_message(self, message, level="info", **context):
        self.messages.append((message, level, context))


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def charge_event(event_type, reference, order_id=None, amount=3000000, email="ada@shopmail.com"):
    data = {"reference": reference, "amount": amount, "customer": {"email": email}}
    if order_id is not None:
        data["metadata"] = {"order_id": order_id}
    return {"event": event_type, "data": data}


def order_payload(**overrides):
    payload = {
        "customerName": "Ada Obi",
        "customerEmail": "ada@shopmail.com",
        "customerPhone": "+234 801 234 5678",
        "shippingAddress": {"address": "12 Marina Road", "city": "Lagos", "state": "Lagos", "zip": "100001"},
        "items": [{"id": TEE, "name": "Classic Tee", "color": "Black", "size": "M", "quantity": 2, "price": 15000}],
        "subtotal": 30000,
        "shippingCost": 2000,
        "total": 32000,
        "paymentMethod": "paystack",
    }
    payload.update(overrides)
    return payload


def seed_catalog(session_factory):
    with session_factory.begin() as db:
        db.add_all(
            [
                Product(id=TEE, name="Classic Tee", category="tops", price=15000, colors=["Black", "White"], sizes=["S", "M", "L"]),
                Product(id=HOODIE, name="Zip Hoodie", category="outerwear", price=30000, colors=["Grey"], sizes=["M"]),
            ]
        )
        db.flush()
        for (product_id, key), quantity in SEED_STOCK.items():
            db.add(VariantStock(product_id=product_id, variant_key=key, quantity_available=quantity))


def add_coupon(session_factory, **fields):
    defaults = {
        "id": f"cp-{fields.get('code', 'SAVE10').lower()}",
        "code": "SAVE10",
        "type": "percentage",
        "value": 10,
        "min_order_amount": 0,
        "usage_count": 0,
        "per_customer_limit": 1,
        "is_active": True,
    }
    defaults.update(fields)
    with session_factory.begin() as db:
        db.add(Coupon(**defaults))
    return defaults


def add_order(session_factory, order_id, items, *, payment_method="paystack", reference=None, total=30000):
    with session_factory.begin() as db:
        create_order_row(
            db,
            order_id=order_id,
            customer_name="Ada Obi",
            customer_email="ada@shopmail.com",
            customer_phone=None,
            shipping_address={"address": "12 Marina Road", "city": "Lagos", "state": "Lagos"},
            items=items,
            subtotal=total,
            shipping_cost=0,
            discount=0,
            total=total,
            payment_method=payment_method,
            payment_reference=reference,
        )


def stock_of(session_factory, product_id, key):
    with session_factory() as db:
        return (
            db.query(VariantStock.quantity_available)
            .filter(VariantStock.product_id == product_id, VariantStock.variant_key == key)
            .scalar()
        )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = build_session_factory(engine)
    seed_catalog(factory)
    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def tracker():
    recorder = RecordingTracker()
    tracking.set_tracker(recorder)
    yield recorder
    tracking.reset_tracker()


@pytest.fixture
def manager(session_factory, clock):
    return ReservationManager(session_factory, ttl=dt.timedelta(minutes=30), clock=clock)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier(publisher):
    return Notifier(publisher=publisher)


@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest.fixture
def coupons(clock):
    return CouponValidator(clock=clock)


@pytest.fixture
def checkout(session_factory, manager, coupons, payment_provider, notifier):
    return CheckoutService(session_factory, manager, coupons, payment_provider, notifier)


@pytest.fixture
def webhooks(session_factory, manager, notifier):
    return WebhookProcessor(session_factory, manager, notifier)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        sweep_enabled=False,
        paystack_secret_key=WEBHOOK_SECRET,
        admin_password=ADMIN_PASSWORD,
        secret_key="test-signing-key",
        order_rate_limit=100,
    )


@pytest.fixture
def app(settings, engine, session_factory, payment_provider, notifier, clock):
    return create_app(settings, engine=engine, payment_provider=payment_provider, notifier=notifier, clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def csrf_client(client):
    token = client.get("/csrf-token").json()["csrfToken"]
    client.headers["X-CSRF-Token"] = token
    return client


@pytest.fixture
def admin_client(client):
    token = client.post("/admin/login", json={"password": ADMIN_PASSWORD}).json()["token"]
    client.headers["Authorization"] = f"Bearer {token}"
    return client


def post_webhook(client, payload, signature=None):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        "/payments/webhook",
        content=body,
        headers={"Content-Type": "application/json", "x-paystack-signature": signature or sign(body)},
    )
