"""Coupon validation.

``evaluate_coupon`` is a pure function over a coupon snapshot and the cart;
``CouponValidator`` only adds the lookups it needs. Validation never consumes
usage: the usage counter moves in ``record_coupon_usage`` when an order is
stored.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional, Sequence

import structlog
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from .models import Coupon, CouponUsage
from .utils.dates import utcnow

logger = structlog.get_logger(__name__)

PERCENTAGE = "percentage"
FIXED = "fixed"
FREE_SHIPPING = "free_shipping"

INVALID_CODE = "Invalid coupon code"


@dataclass(frozen=True)
class CouponRule:
    id: str
    code: str
    type: str
    value: int
    min_order_amount: int = 0
    max_discount_amount: Optional[int] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    per_customer_limit: Optional[int] = 1
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    applicable_categories: tuple = ()
    applicable_products: tuple = ()
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Coupon) -> "CouponRule":
        return cls(
            id=row.id,
            code=row.code,
            type=row.type,
            value=row.value,
            min_order_amount=row.min_order_amount or 0,
            max_discount_amount=row.max_discount_amount,
            usage_limit=row.usage_limit,
            usage_count=row.usage_count or 0,
            per_customer_limit=row.per_customer_limit,
            start_date=row.start_date,
            end_date=row.end_date,
            applicable_categories=tuple(row.applicable_categories or ()),
            applicable_products=tuple(str(p) for p in (row.applicable_products or ())),
            is_active=bool(row.is_active),
        )


@dataclass(frozen=True)
class CartLine:
    product_id: str
    price: int
    quantity: int
    category: Optional[str] = None


@dataclass
class CouponResult:
    valid: bool
    coupon: Optional[CouponRule] = None
    discount: int = 0
    free_shipping: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        if not self.valid:
            return {"valid": False, "error": self.error}
        return {
            "valid": True,
            "coupon": {"code": self.coupon.code, "type": self.coupon.type, "value": self.coupon.value},
            "discount": self.discount,
            "freeShipping": self.free_shipping,
        }


def _invalid(message: str = INVALID_CODE) -> CouponResult:
    return CouponResult(valid=False, error=message)


def _eligible_subtotal(rule: CouponRule, cart_total: int, items: Optional[Sequence[CartLine]]) -> int:
    if items is None or not (rule.applicable_categories or rule.applicable_products):
        return cart_total
    return sum(
        line.price * line.quantity
        for line in items
        if line.product_id in rule.applicable_products or (line.category and line.category in rule.applicable_categories)
    )


def evaluate_coupon(
    rule: Optional[CouponRule],
    cart_total: int,
    *,
    items: Optional[Sequence[CartLine]] = None,
    customer_usage: int = 0,
    today: dt.date,
) -> CouponResult:
    """Check a coupon against a cart and compute the discount.

    Missing, inactive, out-of-window and exhausted codes all fail with the same
    message so callers cannot probe which codes exist.
    """
    if rule is None or not rule.is_active:
        return _invalid()
    if rule.start_date and today < rule.start_date:
        return _invalid()
    if rule.end_date and today > rule.end_date:
        return _invalid()
    if cart_total < rule.min_order_amount:
        return _invalid(f"Minimum order amount is {rule.min_order_amount}")
    if rule.usage_limit is not None and rule.usage_count >= rule.usage_limit:
        return _invalid()
    if rule.per_customer_limit and customer_usage >= rule.per_customer_limit:
        return _invalid("You have already used this coupon")

    base = _eligible_subtotal(rule, cart_total, items)
    if base <= 0:
        return _invalid("Coupon does not apply to the items in your cart")

    if rule.type == FREE_SHIPPING:
        return CouponResult(valid=True, coupon=rule, discount=0, free_shipping=True)

    if rule.type == PERCENTAGE:
        discount = int((Decimal(base) * Decimal(rule.value) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if rule.max_discount_amount is not None:
            discount = min(discount, rule.max_discount_amount)
    elif rule.type == FIXED:
        discount = min(rule.value, base)
    else:
        logger.warning("coupon_unknown_type", code=rule.code, type=rule.type)
        return _invalid()

    return CouponResult(valid=True, coupon=rule, discount=max(0, discount))


def _customer_usage(db: Session, coupon_id: str, customer_email: Optional[str]) -> int:
    if not customer_email:
        return 0
    return (
        db.query(func.count(CouponUsage.id))
        .filter(
            CouponUsage.coupon_id == coupon_id,
            func.lower(CouponUsage.customer_email) == customer_email.strip().lower(),
        )
        .scalar()
    )


class CouponValidator:
    def __init__(self, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self._clock = clock

    def find(self, db: Session, code: str) -> Optional[Coupon]:
        return db.query(Coupon).filter(func.upper(Coupon.code) == code.strip().upper()).first()

    def customer_usage(self, db: Session, coupon_id: str, customer_email: Optional[str]) -> int:
        return _customer_usage(db, coupon_id, customer_email)

    def validate(
        self,
        db: Session,
        code: str,
        cart_total: int,
        items: Optional[Iterable[CartLine]] = None,
        customer_email: Optional[str] = None,
    ) -> CouponResult:
        row = self.find(db, code) if code and code.strip() else None
        rule = CouponRule.from_row(row) if row is not None else None
        usage = self.customer_usage(db, rule.id, customer_email) if rule is not None else 0
        result = evaluate_coupon(
            rule,
            cart_total,
            items=list(items) if items is not None else None,
            customer_usage=usage,
            today=self._clock().date(),
        )
        logger.info("coupon_validated", code=code, valid=result.valid, discount=result.discount)
        return result


def record_coupon_usage(
    db: Session, coupon_id: str, order_id: str, customer_email: str, discount_amount: int
) -> bool:
    """Count one use of the coupon for an order. False if a limit was reached meanwhile.

    The counter UPDATE locks the coupon row, so the per-customer count taken
    after it cannot race a concurrent checkout by the same customer.
    """
    per_customer_limit = db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .values(usage_count=Coupon.usage_count + 1, updated_at=utcnow())
        .returning(Coupon.per_customer_limit)
        .execution_options(synchronize_session=False)
    ).first()
    if per_customer_limit is None:
        return False

    (per_customer_limit,) = per_customer_limit
    if per_customer_limit and _customer_usage(db, coupon_id, customer_email) >= per_customer_limit:
        db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id)
            .values(usage_count=Coupon.usage_count - 1)
            .execution_options(synchronize_session=False)
        )
        logger.info("coupon_customer_limit_reached", coupon_id=coupon_id, order_id=order_id)
        return False

    db.add(
        CouponUsage(
            coupon_id=coupon_id,
            order_id=order_id,
            customer_email=customer_email,
            discount_amount=discount_amount,
        )
    )
    db.flush()
    return True
