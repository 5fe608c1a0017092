import pytest
import requests

from conftest import TEE
from storefront.errors import PaymentProviderError, ValidationFailed
from storefront.external_services import PaystackClient, get_product_info, get_variant_stock
from storefront.notifications import Notifier


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def paystack(session, secret="sk_test_3f9a1c"):
    return PaystackClient(
        secret,
        public_key="pk_test_1",
        base_url="https://api.paystack.test/",
        callback_base_url="https://shop.test",
        session=session,
    )


class TestCatalog:
    def test_product_info(self, session_factory):
        with session_factory() as db:
            assert get_product_info(db, TEE) == {"id": TEE, "name": "Classic Tee", "price": 15000, "category": "tops"}

    def test_unknown_product(self, session_factory):
        with session_factory() as db:
            with pytest.raises(ValidationFailed) as excinfo:
                get_product_info(db, "ghost")
        assert excinfo.value.code == "INVALID_PRODUCT"

    def test_variant_stock(self, session_factory):
        with session_factory() as db:
            assert get_variant_stock(db, TEE, "White-L") == 3
            assert get_variant_stock(db, TEE, "Pink-XS") == 0


class TestPaystackClient:
    def test_initialize_sends_minor_units_and_metadata(self):
        session = FakeSession(
            FakeResponse(
                200,
                {
                    "status": True,
                    "data": {"reference": "ORD-1", "access_code": "ac_9", "authorization_url": "https://pay/ac_9"},
                },
            )
        )

        result = paystack(session).initialize_transaction("ORD-1", "ada@shopmail.com", 32000)

        (sent,) = session.requests
        assert sent["url"] == "https://api.paystack.test/transaction/initialize"
        assert sent["headers"] == {"Authorization": "Bearer sk_test_3f9a1c"}
        assert sent["json"]["amount"] == 3200000
        assert sent["json"]["reference"] == "ORD-1"
        assert sent["json"]["metadata"]["order_id"] == "ORD-1"
        assert sent["json"]["callback_url"].startswith("https://shop.test/order-confirmation?order=ORD-1")
        assert result == {
            "reference": "ORD-1",
            "access_code": "ac_9",
            "authorization_url": "https://pay/ac_9",
            "publicKey": "pk_test_1",
        }

    def test_provider_rejection(self):
        session = FakeSession(FakeResponse(400, {"status": False, "message": "Invalid key"}))
        with pytest.raises(PaymentProviderError) as excinfo:
            paystack(session).initialize_transaction("ORD-2", "ada@shopmail.com", 100)
        assert excinfo.value.message == "Invalid key"

    def test_non_json_error_body(self):
        session = FakeSession(FakeResponse(502, None))
        with pytest.raises(PaymentProviderError):
            paystack(session).initialize_transaction("ORD-3", "ada@shopmail.com", 100)

    def test_network_error(self):
        session = FakeSession(error=requests.exceptions.ConnectTimeout("timed out"))
        with pytest.raises(PaymentProviderError):
            paystack(session).initialize_transaction("ORD-4", "ada@shopmail.com", 100)

    def test_missing_secret(self):
        session = FakeSession()
        with pytest.raises(PaymentProviderError):
            paystack(session, secret="").initialize_transaction("ORD-5", "ada@shopmail.com", 100)
        assert session.requests == []


class TestNotifier:
    ORDER = {"id": "ORD-9", "customerName": "Ada Obi", "customerEmail": "ada@shopmail.com", "total": 32000}

    def test_publishes_confirmation(self, publisher):
        assert Notifier(publisher=publisher).send_order_confirmation(self.ORDER)

        ((key, payload),) = publisher.events
        assert key == "order.confirmed"
        assert payload["event"] == "order.confirmed"
        assert (payload["order_id"], payload["customer_email"], payload["total"]) == ("ORD-9", "ada@shopmail.com", 32000)
        assert payload["occurred_at"].endswith("Z")

    def test_disabled_notifier_sends_nothing(self, publisher):
        assert not Notifier(publisher=publisher, enabled=False).send_order_status_update(self.ORDER, "shipped")
        assert publisher.events == []

    def test_publish_failure_is_swallowed(self):
        def broken(routing_key, payload):
            raise ConnectionError("broker down")

        assert Notifier(publisher=broken).send_order_status_update(self.ORDER, "shipped") is False
