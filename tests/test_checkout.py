from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import HOODIE, TEE, add_coupon, charge_event, order_payload, stock_of
from storefront import movements
from storefront.errors import OutOfStock, PaymentProviderError, ValidationFailed
from storefront.models import Coupon, CouponUsage, Order, Reservation
from storefront.orders import get_order
from storefront.payments import WebhookOutcome, parse_event
from storefront.schemas import OrderCreate


def order_data(**overrides):
    return OrderCreate.model_validate(order_payload(**overrides))


def _count(session_factory, model):
    with session_factory() as db:
        return db.query(model).count()


class TestPlaceOrder:
    def test_paystack_order_holds_stock_until_paid(self, checkout, session_factory, payment_provider, publisher):
        result = checkout.place_order(order_data())

        order_id = result["orderId"]
        assert order_id.startswith("ORD-")
        assert result["total"] == 32000
        assert result["paystack"]["reference"] == f"ps_{order_id}"
        assert payment_provider.calls == [{"order_id": order_id, "email": "ada@shopmail.com", "amount": 32000}]

        with session_factory() as db:
            order = get_order(db, order_id)
            assert (order.payment_status, order.order_status) == ("pending", "pending")
            assert order.payment_reference == f"ps_{order_id}"
            assert order.items[0]["variant_key"] == "Black-M"
            holds = db.query(Reservation).filter(Reservation.order_id == order_id).all()
        assert [(h.variant_key, h.quantity) for h in holds] == [("Black-M", 2)]
        assert stock_of(session_factory, TEE, "Black-M") == 8
        assert publisher.events == []

    def test_manual_order_is_confirmed_immediately(self, checkout, session_factory, payment_provider, publisher):
        result = checkout.place_order(order_data(paymentMethod="manual"))

        order_id = result["orderId"]
        assert result["paystack"] is None
        assert payment_provider.calls == []
        assert _count(session_factory, Reservation) == 0
        assert stock_of(session_factory, TEE, "Black-M") == 8

        with session_factory() as db:
            assert get_order(db, order_id).payment_reference == order_id
            kinds = [m.movement_type for m in movements.list_movements(db, reference_id=order_id)]
        assert kinds == [movements.CONFIRM, movements.RESERVE]
        assert publisher.keys() == ["order.confirmed"]
        assert publisher.events[0][1]["order_id"] == order_id

    def test_server_prices_win_within_tolerance(self, checkout):
        payload = order_payload(total=32050)
        payload["items"][0]["price"] = 1
        result = checkout.place_order(OrderCreate.model_validate(payload))
        assert result["total"] == 32000

    def test_price_mismatch(self, checkout, session_factory):
        with pytest.raises(ValidationFailed) as excinfo:
            checkout.place_order(order_data(total=20000))

        assert excinfo.value.code == "PRICE_MISMATCH"
        assert _count(session_factory, Order) == 0
        assert stock_of(session_factory, TEE, "Black-M") == 10

    def test_unknown_product(self, checkout):
        items = [{"id": "ghost", "name": "Ghost", "color": "Black", "size": "M", "quantity": 1, "price": 100}]
        with pytest.raises(ValidationFailed) as excinfo:
            checkout.place_order(order_data(items=items))
        assert excinfo.value.code == "INVALID_PRODUCT"

    def test_out_of_stock_rolls_back_everything(self, checkout, session_factory, payment_provider):
        items = [
            {"id": HOODIE, "name": "Zip Hoodie", "color": "Grey", "size": "M", "quantity": 2, "price": 30000},
            {"id": TEE, "name": "Classic Tee", "color": "White", "size": "L", "quantity": 5, "price": 15000},
        ]
        with pytest.raises(OutOfStock) as excinfo:
            checkout.place_order(order_data(items=items, subtotal=135000, total=137000))

        assert excinfo.value.available == 3
        assert excinfo.value.item_name == "Classic Tee"
        assert stock_of(session_factory, HOODIE, "Grey-M") == 5
        assert _count(session_factory, Reservation) == 0
        assert _count(session_factory, Order) == 0
        assert payment_provider.calls == []

    def test_provider_failure_fails_order_and_releases_holds(self, checkout, session_factory, payment_provider):
        payment_provider.fail = True

        with pytest.raises(PaymentProviderError):
            checkout.place_order(order_data())

        with session_factory() as db:
            (order,) = db.query(Order).all()
        assert order.payment_status == "failed"
        assert _count(session_factory, Reservation) == 0
        assert stock_of(session_factory, TEE, "Black-M") == 10

    def test_paystack_without_provider(self, session_factory, manager, coupons, notifier):
        from storefront.checkout import CheckoutService

        service = CheckoutService(session_factory, manager, coupons, None, notifier)
        with pytest.raises(PaymentProviderError):
            service.place_order(order_data())
        assert stock_of(session_factory, TEE, "Black-M") == 10


class TestCheckoutCoupons:
    def test_percentage_coupon_is_applied_and_counted(self, checkout, session_factory):
        add_coupon(session_factory)

        result = checkout.place_order(order_data(discountCode="save10", discount=3000, total=29000))

        assert result["total"] == 29000
        with session_factory() as db:
            order = get_order(db, result["orderId"])
            assert (order.discount, order.discount_code) == (3000, "SAVE10")
            assert db.get(Coupon, "cp-save10").usage_count == 1
            (usage,) = db.query(CouponUsage).all()
        assert (usage.order_id, usage.discount_amount) == (result["orderId"], 3000)

    def test_free_shipping_coupon(self, checkout, session_factory):
        add_coupon(session_factory, code="FREESHIP", type="free_shipping", value=0)

        result = checkout.place_order(order_data(discountCode="FREESHIP", total=30000))

        with session_factory() as db:
            assert get_order(db, result["orderId"]).shipping_cost == 0
        assert result["total"] == 30000

    def test_invalid_coupon_rejects_order(self, checkout, session_factory):
        with pytest.raises(ValidationFailed) as excinfo:
            checkout.place_order(order_data(discountCode="NOPE"))

        assert excinfo.value.code == "INVALID_COUPON"
        assert excinfo.value.message == "Invalid coupon code"
        assert _count(session_factory, Order) == 0
        assert stock_of(session_factory, TEE, "Black-M") == 10

    def test_used_up_coupon(self, checkout, session_factory):
        add_coupon(session_factory, usage_limit=1, per_customer_limit=None)
        checkout.place_order(order_data(discountCode="SAVE10", total=29000))

        with pytest.raises(ValidationFailed):
            checkout.place_order(order_data(customerEmail="bola@shopmail.com", discountCode="SAVE10", total=29000))
        assert stock_of(session_factory, TEE, "Black-M") == 8


class TestConcurrentCheckoutToPayment:
    def test_three_checkouts_against_ten_units(self, checkout, webhooks, session_factory):
        payload = order_payload(
            items=[{"id": TEE, "name": "Classic Tee", "color": "Black", "size": "M", "quantity": 4, "price": 15000}],
            subtotal=60000,
            total=62000,
        )

        def attempt(_):
            try:
                return checkout.place_order(OrderCreate.model_validate(payload))
            except OutOfStock as exc:
                return exc

        with ThreadPoolExecutor(max_workers=3) as pool:
            results = list(pool.map(attempt, range(3)))

        placed = [r for r in results if isinstance(r, dict)]
        failed = [r for r in results if isinstance(r, OutOfStock)]
        assert len(placed) == 2
        assert len(failed) == 1
        assert failed[0].available == 2

        for result in placed:
            event = parse_event(charge_event("charge.success", result["paystack"]["reference"], result["orderId"]))
            assert webhooks.process_webhook(event) is WebhookOutcome.PROCESSED

        assert stock_of(session_factory, TEE, "Black-M") == 2
        assert _count(session_factory, Reservation) == 0
        with session_factory() as db:
            confirms = movements.list_movements(db, product_id=TEE, movement_type=movements.CONFIRM)
            assert len(confirms) == 2
            assert all(o.payment_status == "paid" for o in db.query(Order).all())
            assert movements.reconcile_variant(db, TEE, "Black-M")["consistent"]
