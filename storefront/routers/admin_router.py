from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from .. import schemas
from ..audit import log_audit
from ..auth import ADMIN_SUBJECT, check_admin_password, create_access_token, get_current_admin
from ..config import Settings
from ..database import get_db
from ..dependencies import get_notifier, get_reservations, get_settings, get_sweeper
from ..external_services import get_product_info, get_variant_stock
from ..inventory import ReservationManager, variant_key
from ..movements import list_movements, movement_to_dict, reconcile_all, reconcile_variant
from ..notifications import Notifier
from ..orders import OrderStatus, list_orders, order_stats, order_to_dict, update_order_status
from ..security import client_address
from ..sweeper import ReservationSweeper
from ..utils.dates import isoformat_z

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/login", response_model=schemas.Token)
def admin_login(payload: schemas.AdminLogin, request: Request, settings: Settings = Depends(get_settings)):
    if not check_admin_password(payload.password, settings.admin_password):
        logger.warning("admin_login_failed", client=client_address(request))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = create_access_token(
        {"sub": ADMIN_SUBJECT, "role": "admin"},
        settings.secret_key,
        settings.access_token_expire_minutes,
    )
    return {"token": token, "token_type": "bearer"}


@router.get("/orders")
def get_orders(
    order_status: Optional[str] = Query(None, alias="status"),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    orders = list_orders(db, order_status=order_status, payment_status=payment_status, skip=skip, limit=limit)
    return {"success": True, "orders": [order_to_dict(o) for o in orders], "skip": skip, "limit": limit}


@router.post("/orders/{order_id}/status")
def set_order_status(
    order_id: str,
    payload: schemas.OrderStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reservations: ReservationManager = Depends(get_reservations),
    notifier: Notifier = Depends(get_notifier),
    admin: dict = Depends(get_current_admin),
):
    new_status = payload.status.value
    with db.begin():
        order, old_status = update_order_status(
            db,
            order_id,
            new_status,
            performed_by=admin["sub"],
            ip_address=client_address(request),
            user_agent=request.headers.get("user-agent"),
        )
        if new_status == OrderStatus.CANCELLED:
            reservations.cancel_reservation_in(db, order_id, reason="order cancelled")
        order_data = order_to_dict(order)

    if old_status != new_status:
        notifier.send_order_status_update(order_data, new_status)
    return {"success": True, "order": order_data, "previousStatus": old_status}


@router.get("/inventory/low-stock")
def low_stock(
    threshold: Optional[int] = Query(None, ge=0),
    reservations: ReservationManager = Depends(get_reservations),
    settings: Settings = Depends(get_settings),
    admin: dict = Depends(get_current_admin),
):
    threshold = settings.low_stock_threshold if threshold is None else threshold
    return {"success": True, "threshold": threshold, "items": reservations.get_low_stock(threshold)}


@router.get("/inventory/{product_id}/stock")
def get_stock(
    product_id: str,
    color: str = Query(..., min_length=1),
    size: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    product = get_product_info(db, product_id)
    key = variant_key(color, size)
    return {
        "success": True,
        "productId": product["id"],
        "name": product["name"],
        "variantKey": key,
        "quantity": get_variant_stock(db, product["id"], key),
    }


@router.put("/inventory/{product_id}/stock")
def set_stock(
    product_id: str,
    payload: schemas.StockUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reservations: ReservationManager = Depends(get_reservations),
    admin: dict = Depends(get_current_admin),
):
    key = variant_key(payload.color, payload.size)
    result = reservations.set_stock(product_id, key, payload.quantity, reference_id=product_id, notes=payload.notes)
    with db.begin():
        log_audit(
            db,
            action="stock_update",
            entity_type="product",
            entity_id=product_id,
            old_data={"variantKey": key, "quantity": result["before"]},
            new_data={"variantKey": key, "quantity": result["quantity"]},
            performed_by=admin["sub"],
            ip_address=client_address(request),
            user_agent=request.headers.get("user-agent"),
        )
    return {"success": True, **result}


@router.post("/inventory/release/{order_id}")
def release_reservation(
    order_id: str,
    request: Request,
    db: Session = Depends(get_db),
    reservations: ReservationManager = Depends(get_reservations),
    admin: dict = Depends(get_current_admin),
):
    released = reservations.cancel_reservation(order_id, reason="released by admin")
    with db.begin():
        log_audit(
            db,
            action="reservation_release",
            entity_type="order",
            entity_id=order_id,
            new_data={"released": released},
            performed_by=admin["sub"],
            ip_address=client_address(request),
            user_agent=request.headers.get("user-agent"),
        )
    return {"success": True, "orderId": order_id, "released": released}


@router.get("/inventory/reservations")
def get_reservations_for_order(
    order_id: Optional[str] = Query(None, alias="orderId"),
    reservations: ReservationManager = Depends(get_reservations),
    admin: dict = Depends(get_current_admin),
):
    holds = reservations.active_reservations(order_id)
    return {
        "success": True,
        "reservations": [
            {
                "id": r.id,
                "orderId": r.order_id,
                "productId": r.product_id,
                "variantKey": r.variant_key,
                "quantity": r.quantity,
                "expiresAt": isoformat_z(r.expires_at),
            }
            for r in holds
        ],
    }


@router.post("/inventory/cleanup")
def cleanup_expired(
    sweeper: ReservationSweeper = Depends(get_sweeper),
    admin: dict = Depends(get_current_admin),
):
    released = sweeper.run_once()
    return {"success": True, "released": released}


@router.get("/inventory/movements")
def get_movements(
    product_id: Optional[str] = Query(None, alias="productId"),
    color: Optional[str] = None,
    size: Optional[str] = None,
    reference_id: Optional[str] = Query(None, alias="referenceId"),
    movement_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    key = variant_key(color, size) if color and size else None
    movements = list_movements(
        db,
        product_id=product_id,
        variant_key=key,
        reference_id=reference_id,
        movement_type=movement_type,
        limit=limit,
    )
    return {"success": True, "movements": [movement_to_dict(m) for m in movements]}


@router.get("/inventory/reconcile")
def reconcile(
    product_id: Optional[str] = Query(None, alias="productId"),
    color: Optional[str] = None,
    size: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    if product_id and color and size:
        reports = [reconcile_variant(db, product_id, variant_key(color, size))]
    else:
        reports = reconcile_all(db)
    return {"success": True, "consistent": all(r["consistent"] for r in reports), "variants": reports}


@router.get("/stats")
def stats(
    db: Session = Depends(get_db),
    reservations: ReservationManager = Depends(get_reservations),
    admin: dict = Depends(get_current_admin),
):
    data = order_stats(db)
    data["activeReservations"] = len(reservations.active_reservations())
    return {"success": True, "stats": data}
