from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..checkout import CheckoutService
from ..coupons import CartLine, CouponValidator
from ..database import get_db
from ..dependencies import get_checkout, get_coupons
from ..orders import lookup_order, order_to_dict
from ..security import order_rate_limit, verify_csrf

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


@router.post("", dependencies=[Depends(order_rate_limit), Depends(verify_csrf)])
def create_order(
    payload: schemas.OrderCreate,
    checkout: CheckoutService = Depends(get_checkout),
):
    """Checkout: reserve stock for every line item and create the order.

    Answers 409 OUT_OF_STOCK with the failing item and the quantity still
    available when any line cannot be reserved; nothing stays held.
    """
    result = checkout.place_order(payload)
    return {"success": True, **result}


@router.post("/validate-coupon")
def validate_coupon(
    payload: schemas.CouponValidateRequest,
    db: Session = Depends(get_db),
    coupons: CouponValidator = Depends(get_coupons),
):
    items = None
    if payload.items is not None:
        items = [CartLine(i.id, i.price, i.quantity, i.category) for i in payload.items]
    result = coupons.validate(db, payload.code, payload.cart_total, items=items, customer_email=payload.customer_email)
    return result.to_dict()


@router.post("/lookup")
def lookup(payload: schemas.OrderLookupRequest, db: Session = Depends(get_db)):
    order = lookup_order(db, payload.order_id, payload.email)
    return {"success": True, "order": order_to_dict(order)}
