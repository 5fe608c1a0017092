"""Order state machine.

payment_status: pending -> paid | failed. Refunds are tracked on order_status
so the fact that money was received stays on record.

order_status: pending -> processing -> shipped -> delivered, plus cancelled and
refunded. Webhook transitions are conditional UPDATEs, so a duplicate delivery
matches no row and changes nothing.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import structlog
from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from .audit import log_audit
from .errors import OrderNotFound, ValidationFailed
from .models import Order
from .utils.dates import isoformat_z, utcnow

logger = structlog.get_logger(__name__)


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OrderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    # Values an admin may set; the forward path is not enforced.
    ADMIN_SETTABLE = (PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED)


PAYMENT_METHODS = ("manual", "paystack", "cash")


def _snapshot(order: Order) -> dict:
    return {"paymentStatus": order.payment_status, "orderStatus": order.order_status}


def create_order_row(
    db: Session,
    *,
    order_id: str,
    customer_name: str,
    customer_email: str,
    customer_phone: Optional[str],
    shipping_address: dict,
    items: List[dict],
    subtotal: int,
    shipping_cost: int,
    discount: int,
    total: int,
    payment_method: str,
    payment_reference: Optional[str] = None,
    discount_code: Optional[str] = None,
    notes: Optional[str] = None,
) -> Order:
    order = Order(
        id=order_id,
        customer_name=customer_name,
        customer_email=customer_email,
        customer_phone=customer_phone,
        shipping_address=shipping_address,
        items=items,
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        discount=discount,
        total=total,
        payment_method=payment_method,
        payment_status=PaymentStatus.PENDING,
        payment_reference=payment_reference,
        order_status=OrderStatus.PENDING,
        discount_code=discount_code,
        notes=notes or "",
    )
    db.add(order)
    db.flush()
    return order


def get_order(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def lookup_order(db: Session, order_id: str, email: str) -> Order:
    """Customer-facing lookup: the email must match the one on the order."""
    order = (
        db.query(Order)
        .filter(Order.id == order_id, func.lower(Order.customer_email) == email.strip().lower())
        .first()
    )
    if order is None:
        raise OrderNotFound("Order not found")
    return order


def list_orders(
    db: Session,
    *,
    order_status: Optional[str] = None,
    payment_status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Order]:
    q = db.query(Order)
    if order_status:
        q = q.filter(Order.order_status == order_status)
    if payment_status:
        q = q.filter(Order.payment_status == payment_status)
    return q.order_by(Order.created_at.desc(), Order.id).offset(skip).limit(limit).all()


def find_order_for_payment(
    db: Session, reference: Optional[str], metadata_order_id: Optional[str] = None
) -> Optional[Order]:
    """Resolve a payment event to its order.

    The provider reference wins; the order id from event metadata is only used
    when the reference is unknown (e.g. the reference was never stored).
    """
    if reference:
        order = db.query(Order).filter(Order.payment_reference == reference).first()
        if order is not None:
            return order
    if metadata_order_id:
        return get_order(db, str(metadata_order_id))
    return None


def mark_paid(db: Session, order: Order, *, performed_by: str = "webhook") -> bool:
    """Record a successful payment. Returns False if the order was already paid."""
    old = _snapshot(order)
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status != PaymentStatus.PAID)
        .values(
            payment_status=PaymentStatus.PAID,
            # An admin may already have moved the order further along.
            order_status=case(
                (Order.order_status == OrderStatus.PENDING, OrderStatus.PROCESSING),
                else_=Order.order_status,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    db.refresh(order)
    log_audit(
        db,
        action="payment_confirmed",
        entity_type="order",
        entity_id=order.id,
        old_data=old,
        new_data=_snapshot(order),
        performed_by=performed_by,
    )
    return True


def mark_payment_failed(db: Session, order: Order, *, performed_by: str = "webhook") -> bool:
    """pending -> failed. A paid order never goes back to failed."""
    old = _snapshot(order)
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
        .values(payment_status=PaymentStatus.FAILED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    db.refresh(order)
    log_audit(
        db,
        action="payment_failed",
        entity_type="order",
        entity_id=order.id,
        old_data=old,
        new_data=_snapshot(order),
        performed_by=performed_by,
    )
    return True


def mark_refunded(db: Session, order: Order, refund_reference: str, *, performed_by: str = "webhook") -> bool:
    old = _snapshot(order)
    note = f" | Refund processed: {refund_reference}"
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.order_status != OrderStatus.REFUNDED)
        .values(
            order_status=OrderStatus.REFUNDED,
            notes=func.coalesce(Order.notes, "") + note,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    db.refresh(order)
    log_audit(
        db,
        action="order_refunded",
        entity_type="order",
        entity_id=order.id,
        old_data=old,
        new_data={**_snapshot(order), "refundReference": refund_reference},
        performed_by=performed_by,
    )
    return True


def update_order_status(
    db: Session,
    order_id: str,
    new_status: str,
    *,
    performed_by: str = "admin",
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Tuple[Order, str]:
    """Admin status change. Returns the order and its previous status."""
    if new_status not in OrderStatus.ADMIN_SETTABLE:
        raise ValidationFailed(
            "Invalid order status",
            [{"field": "status", "message": f"Must be one of: {', '.join(OrderStatus.ADMIN_SETTABLE)}"}],
        )

    order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
    if order is None:
        raise OrderNotFound(f"Order not found: {order_id}")

    old_status = order.order_status
    order.order_status = new_status
    order.updated_at = utcnow()
    db.flush()
    log_audit(
        db,
        action="order_status_update",
        entity_type="order",
        entity_id=order.id,
        old_data={"orderStatus": old_status},
        new_data={"orderStatus": new_status},
        performed_by=performed_by,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info("order_status_updated", order_id=order.id, old_status=old_status, new_status=new_status)
    return order, old_status


def order_stats(db: Session) -> dict:
    total_orders = db.query(func.count(Order.id)).scalar()
    pending_orders = db.query(func.count(Order.id)).filter(Order.order_status == OrderStatus.PENDING).scalar()
    revenue = (
        db.query(func.coalesce(func.sum(Order.total), 0))
        .filter(Order.payment_status == PaymentStatus.PAID)
        .scalar()
    )
    return {"totalOrders": total_orders, "pendingOrders": pending_orders, "totalRevenue": int(revenue)}


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "customerName": order.customer_name,
        "customerEmail": order.customer_email,
        "customerPhone": order.customer_phone,
        "shippingAddress": order.shipping_address,
        "items": order.items,
        "subtotal": order.subtotal,
        "shippingCost": order.shipping_cost,
        "discount": order.discount,
        "total": order.total,
        "paymentMethod": order.payment_method,
        "paymentStatus": order.payment_status,
        "paymentReference": order.payment_reference,
        "orderStatus": order.order_status,
        "discountCode": order.discount_code,
        "notes": order.notes,
        "createdAt": isoformat_z(order.created_at),
        "updatedAt": isoformat_z(order.updated_at),
    }
