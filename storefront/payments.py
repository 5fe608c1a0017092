"""Payment webhook processing.

Inbound provider events are verified against the raw request body, parsed
into one of a closed set of event classes and dispatched to an idempotent
order transition. Every event is written to the webhook log before dispatch.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import movements
from .audit import log_webhook_event
from .errors import OutOfStock, StoreError, ValidationFailed
from .inventory import LineItem, ReservationManager
from .notifications import Notifier
from .orders import (
    OrderStatus,
    PaymentStatus,
    find_order_for_payment,
    mark_paid,
    mark_payment_failed,
    mark_refunded,
    order_to_dict,
)
from .tracking import capture_exception, capture_message

logger = structlog.get_logger(__name__)


class PaymentProvider(Protocol):
    def initialize_transaction(self, order_id: str, email: str, amount: int) -> dict:
        """Return at least ``reference`` and ``authorization_url``."""


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA512 of the exact bytes received, hex encoded, compared in constant time."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))


# -----------------------------
# Events
# -----------------------------


@dataclass(frozen=True)
class ChargeSuccess:
    reference: Optional[str]
    amount: Optional[int]
    customer_email: Optional[str]
    metadata_order_id: Optional[str]
    raw: dict = field(repr=False, compare=False)
    event_type = "charge.success"


@dataclass(frozen=True)
class ChargeFailed:
    reference: Optional[str]
    amount: Optional[int]
    customer_email: Optional[str]
    metadata_order_id: Optional[str]
    raw: dict = field(repr=False, compare=False)
    event_type = "charge.failed"


@dataclass(frozen=True)
class RefundProcessed:
    reference: Optional[str]
    transaction_reference: Optional[str]
    amount: Optional[int]
    customer_email: Optional[str]
    raw: dict = field(repr=False, compare=False)
    event_type = "refund.processed"


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str
    reference: Optional[str]
    amount: Optional[int]
    customer_email: Optional[str]
    raw: dict = field(repr=False, compare=False)


PaymentEvent = Union[ChargeSuccess, ChargeFailed, RefundProcessed, UnknownEvent]


def _as_int(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_event(payload: dict) -> PaymentEvent:
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        raise ValidationFailed("Malformed webhook payload")

    event_type = payload["event"]
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationFailed("Malformed webhook payload")

    reference = data.get("reference")
    amount = _as_int(data.get("amount"))
    customer = data.get("customer") or {}
    email = customer.get("email") if isinstance(customer, dict) else None
    metadata = data.get("metadata") or {}
    order_id = metadata.get("order_id") if isinstance(metadata, dict) else None

    if event_type == ChargeSuccess.event_type:
        return ChargeSuccess(reference, amount, email, order_id, raw=payload)
    if event_type == ChargeFailed.event_type:
        return ChargeFailed(reference, amount, email, order_id, raw=payload)
    if event_type == RefundProcessed.event_type:
        transaction_reference = data.get("transaction_reference")
        if transaction_reference is None and isinstance(data.get("transaction"), dict):
            transaction_reference = data["transaction"].get("reference")
        return RefundProcessed(reference, transaction_reference, amount, email, raw=payload)
    return UnknownEvent(event_type, reference, amount, email, raw=payload)


class WebhookOutcome(enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    ORDER_NOT_FOUND = "order_not_found"
    IGNORED = "ignored"
    UNHANDLED = "unhandled"

    @property
    def handled(self) -> bool:
        return self is not WebhookOutcome.UNHANDLED


def _shortfall(items: Optional[list], deducted: dict[tuple[str, str], int]) -> list[LineItem]:
    """Order lines, per variant, that no longer have stock taken out for them."""
    required: dict[tuple[str, str], LineItem] = {}
    for item in map(LineItem.from_dict, items or []):
        key = (item.product_id, item.variant_key)
        prev = required.get(key)
        required[key] = item if prev is None else LineItem(*key, prev.quantity + item.quantity, prev.name)

    missing = []
    for key, item in sorted(required.items()):
        quantity = item.quantity - max(deducted.get(key, 0), 0)
        if quantity > 0:
            missing.append(LineItem(item.product_id, item.variant_key, quantity, item.name))
    return missing


class WebhookProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        reservations: ReservationManager,
        notifier: Notifier,
    ) -> None:
        self._session_factory = session_factory
        self._reservations = reservations
        self._notifier = notifier

    def process_webhook(self, event: PaymentEvent) -> WebhookOutcome:
        self._log_event(event)

        try:
            if isinstance(event, ChargeSuccess):
                outcome = self._charge_success(event)
            elif isinstance(event, ChargeFailed):
                outcome = self._charge_failed(event)
            elif isinstance(event, RefundProcessed):
                outcome = self._refund_processed(event)
            elif isinstance(event, UnknownEvent):
                logger.info("webhook_event_unhandled", event_type=event.event_type, reference=event.reference)
                outcome = WebhookOutcome.UNHANDLED
            else:
                raise TypeError(f"No handler for payment event {type(event).__name__}")
        except SQLAlchemyError as exc:
            capture_exception(exc, event_type=event.event_type, reference=event.reference)
            raise StoreError("Failed to apply payment event") from exc

        logger.info(
            "webhook_processed",
            event_type=event.event_type,
            reference=event.reference,
            outcome=outcome.value,
        )
        return outcome

    def _log_event(self, event: PaymentEvent) -> None:
        try:
            with self._session_factory.begin() as db:
                log_webhook_event(
                    db,
                    event_type=event.event_type,
                    reference=event.reference,
                    amount=event.amount,
                    customer_email=event.customer_email,
                    raw_data=event.raw,
                )
        except SQLAlchemyError as exc:
            capture_exception(exc, event_type=event.event_type, reference=event.reference)
            raise StoreError("Failed to record payment event") from exc

    def _order_not_found(self, event: PaymentEvent) -> WebhookOutcome:
        logger.warning("webhook_order_not_found", event_type=event.event_type, reference=event.reference)
        capture_message(
            f"Payment event for unknown order: {event.reference}",
            level="warning",
            event_type=event.event_type,
            reference=event.reference,
            amount=event.amount,
        )
        return WebhookOutcome.ORDER_NOT_FOUND

    def _charge_success(self, event: ChargeSuccess) -> WebhookOutcome:
        with self._session_factory.begin() as db:
            order = find_order_for_payment(db, event.reference, event.metadata_order_id)
            if order is None:
                return self._order_not_found(event)
            if order.payment_status == PaymentStatus.PAID or not mark_paid(db, order):
                logger.info("webhook_duplicate", order_id=order.id, reference=event.reference)
                return WebhookOutcome.DUPLICATE

            if event.reference and order.payment_reference != event.reference:
                order.payment_reference = event.reference
                db.flush()

            closed = order.order_status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED)
            shortfall = []
            if closed:
                self._reservations.cancel_reservation_in(db, order.id, reason="order closed before payment")
            else:
                self._reservations.confirm_reservation_in(db, order.id)
                # Lines released (expiry or an earlier failed charge) before the money arrived.
                shortfall = _shortfall(order.items, movements.net_deducted_by_variant(db, order.id))
            order_data = order_to_dict(order)

        if closed:
            logger.warning("payment_for_closed_order", order_id=order_data["id"], order_status=order_data["orderStatus"])
            capture_message(
                f"Payment received for {order_data['orderStatus']} order {order_data['id']}; refund or reinstate it",
                level="warning",
                order_id=order_data["id"],
                order_status=order_data["orderStatus"],
                reference=event.reference,
                amount=event.amount,
            )
            return WebhookOutcome.PROCESSED

        if shortfall:
            self._reserve_paid_order(order_data["id"], shortfall)
        self._notifier.send_order_confirmation(order_data)
        return WebhookOutcome.PROCESSED

    def _reserve_paid_order(self, order_id: str, items: list[LineItem]) -> None:
        try:
            self._reservations.reserve_items(order_id, items)
            self._reservations.confirm_reservation(order_id, items)
        except OutOfStock as exc:
            capture_message(
                f"Paid order {order_id} could not be re-reserved: {exc.message}",
                level="error",
                order_id=order_id,
                product_id=exc.product_id,
                variant_key=exc.variant_key,
                available=exc.available,
            )
            return
        except StoreError as exc:
            # Payment is already recorded; stock needs a manual fix rather than a provider retry.
            capture_message(
                f"Paid order {order_id} could not be re-reserved: {exc.message}",
                level="error",
                order_id=order_id,
            )
            return
        logger.info("paid_order_restocked", order_id=order_id, lines=len(items))

    def _charge_failed(self, event: ChargeFailed) -> WebhookOutcome:
        with self._session_factory.begin() as db:
            order = find_order_for_payment(db, event.reference, event.metadata_order_id)
            if order is None:
                return self._order_not_found(event)
            if order.payment_status == PaymentStatus.FAILED:
                return WebhookOutcome.DUPLICATE
            if not mark_payment_failed(db, order):
                logger.info("webhook_charge_failed_ignored", order_id=order.id, payment_status=order.payment_status)
                return WebhookOutcome.IGNORED
            self._reservations.cancel_reservation_in(db, order.id, reason="payment failed")
        return WebhookOutcome.PROCESSED

    def _refund_processed(self, event: RefundProcessed) -> WebhookOutcome:
        with self._session_factory.begin() as db:
            order = find_order_for_payment(db, event.transaction_reference)
            if order is None:
                return self._order_not_found(event)
            if order.order_status == OrderStatus.REFUNDED or not mark_refunded(db, order, event.reference or ""):
                return WebhookOutcome.DUPLICATE
            order_data = order_to_dict(order)

        self._notifier.send_order_status_update(order_data, OrderStatus.REFUNDED)
        return WebhookOutcome.PROCESSED
