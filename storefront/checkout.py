"""Checkout: price the cart, hold the stock, store the order, start payment.

There is no transaction spanning the whole checkout. Each step commits on its
own and a failure undoes the earlier steps: holds are released if the order
cannot be stored, and a stored hosted-payment order whose provider call fails
is marked failed and its holds released.
"""

from __future__ import annotations

import secrets
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .coupons import CartLine, CouponResult, CouponValidator, record_coupon_usage
from .errors import PaymentProviderError, StoreError, StorefrontError, ValidationFailed
from .external_services import get_product_info
from .inventory import LineItem, ReservationManager, variant_key
from .notifications import Notifier
from .orders import create_order_row, get_order, mark_payment_failed, order_to_dict
from .payments import PaymentProvider
from .schemas import OrderCreate, OrderItemIn, PaymentMethod
from .tracking import capture_exception

logger = structlog.get_logger(__name__)


class CheckoutService:
    def __init__(
        self,
        session_factory: sessionmaker,
        reservations: ReservationManager,
        coupons: CouponValidator,
        payment_provider: Optional[PaymentProvider] = None,
        notifier: Optional[Notifier] = None,
        *,
        price_tolerance: int = 100,
        order_id_prefix: str = "ORD",
    ) -> None:
        self._session_factory = session_factory
        self._reservations = reservations
        self._coupons = coupons
        self._payment_provider = payment_provider
        self._notifier = notifier
        self.price_tolerance = price_tolerance
        self.order_id_prefix = order_id_prefix

    def new_order_id(self) -> str:
        return f"{self.order_id_prefix}-{secrets.token_hex(4).upper()}"

    def _price_items(self, db: Session, items: List[OrderItemIn]) -> Tuple[List[dict], List[CartLine], int]:
        priced, lines, subtotal = [], [], 0
        for item in items:
            product = get_product_info(db, item.id)
            subtotal += product["price"] * item.quantity
            priced.append(
                {
                    "product_id": product["id"],
                    "name": product["name"],
                    "color": item.color,
                    "size": item.size,
                    "variant_key": variant_key(item.color, item.size),
                    "quantity": item.quantity,
                    "price": product["price"],
                }
            )
            lines.append(CartLine(product["id"], product["price"], item.quantity, product["category"]))
        return priced, lines, subtotal

    def _apply_coupon(
        self, db: Session, data: OrderCreate, subtotal: int, lines: List[CartLine]
    ) -> Optional[CouponResult]:
        if not data.discount_code:
            return None
        result = self._coupons.validate(db, data.discount_code, subtotal, items=lines, customer_email=data.customer_email)
        if not result.valid:
            raise ValidationFailed(
                result.error,
                [{"field": "discountCode", "message": result.error}],
                code="INVALID_COUPON",
            )
        return result

    def place_order(self, data: OrderCreate) -> dict:
        method = PaymentMethod(data.payment_method)
        if method == PaymentMethod.PAYSTACK and self._payment_provider is None:
            raise PaymentProviderError("Online payment is not available")

        order_id = self.new_order_id()
        log = logger.bind(order_id=order_id)

        with self._session_factory() as db:
            priced, lines, subtotal = self._price_items(db, data.items)
            coupon = self._apply_coupon(db, data, subtotal, lines)

        shipping_cost = 0 if coupon is not None and coupon.free_shipping else data.shipping_cost
        discount = coupon.discount if coupon is not None else 0
        total = max(0, subtotal + shipping_cost - discount)
        if abs(total - data.total) > self.price_tolerance:
            log.warning("price_mismatch", client_total=data.total, server_total=total)
            raise ValidationFailed(
                "Price mismatch detected. Please refresh and try again.",
                [{"field": "total", "message": f"Expected {total}"}],
                code="PRICE_MISMATCH",
            )

        # Releases whatever it already held before raising.
        self._reservations.reserve_items(
            order_id,
            [LineItem(i["product_id"], i["variant_key"], i["quantity"], i["name"]) for i in priced],
        )

        try:
            with self._session_factory.begin() as db:
                order = create_order_row(
                    db,
                    order_id=order_id,
                    customer_name=data.customer_name,
                    customer_email=data.customer_email,
                    customer_phone=data.customer_phone,
                    shipping_address=data.shipping_address.model_dump(),
                    items=priced,
                    subtotal=subtotal,
                    shipping_cost=shipping_cost,
                    discount=discount,
                    total=total,
                    payment_method=method.value,
                    payment_reference=order_id if method != PaymentMethod.PAYSTACK else None,
                    discount_code=coupon.coupon.code if coupon is not None else None,
                    notes=data.notes,
                )
                if coupon is not None and not record_coupon_usage(
                    db, coupon.coupon.id, order_id, data.customer_email, discount
                ):
                    raise ValidationFailed(
                        "Invalid coupon code",
                        [{"field": "discountCode", "message": "Invalid coupon code"}],
                        code="INVALID_COUPON",
                    )
                if method != PaymentMethod.PAYSTACK:
                    # Offline payment: the sale is committed with the order.
                    self._reservations.confirm_reservation_in(db, order_id)
                order_data = order_to_dict(order)
        except SQLAlchemyError as exc:
            capture_exception(exc, operation="create_order", order_id=order_id)
            self._release(order_id, "order creation failed")
            raise StoreError("Failed to create order") from exc
        except StorefrontError:
            self._release(order_id, "order creation failed")
            raise

        log.info("order_created", payment_method=method.value, total=total, items=len(priced))

        paystack = None
        if method == PaymentMethod.PAYSTACK:
            paystack = self._start_payment(order_data)
        elif self._notifier is not None:
            self._notifier.send_order_confirmation(order_data)

        return {"orderId": order_id, "total": total, "paystack": paystack}

    def _start_payment(self, order: dict) -> dict:
        order_id = order["id"]
        try:
            init = self._payment_provider.initialize_transaction(order_id, order["customerEmail"], order["total"])
        except PaymentProviderError as exc:
            logger.warning("payment_initialization_failed", order_id=order_id, error=exc.message)
            self._abandon_payment(order_id)
            raise

        try:
            with self._session_factory.begin() as db:
                stored = get_order(db, order_id)
                stored.payment_reference = init["reference"]
        except SQLAlchemyError as exc:
            # The provider echoes the order id in metadata, so the webhook still finds the order.
            capture_exception(exc, operation="store_payment_reference", order_id=order_id)

        return {
            "reference": init["reference"],
            "authorization_url": init.get("authorization_url"),
            "access_code": init.get("access_code"),
            "publicKey": init.get("publicKey"),
        }

    def _abandon_payment(self, order_id: str) -> None:
        try:
            with self._session_factory.begin() as db:
                order = get_order(db, order_id)
                mark_payment_failed(db, order, performed_by="checkout")
                self._reservations.cancel_reservation_in(db, order_id, reason="payment initialization failed")
        except SQLAlchemyError as exc:
            capture_exception(exc, operation="abandon_payment", order_id=order_id)

    def _release(self, order_id: str, reason: str) -> None:
        try:
            self._reservations.cancel_reservation(order_id, reason=reason)
        except StoreError as exc:
            capture_exception(exc, operation="release_after_failure", order_id=order_id)
