from fastapi import APIRouter, Depends, Query

from ..dependencies import get_reservations
from ..inventory import ReservationManager

router = APIRouter(
    prefix="/inventory",
    tags=["Inventory"]
)


@router.get("/check/{product_id}")
def check_stock(
    product_id: str,
    color: str = Query(..., min_length=1, max_length=50),
    size: str = Query(..., min_length=1, max_length=20),
    reservations: ReservationManager = Depends(get_reservations),
):
    stock = reservations.get_stock(product_id, color, size)
    return {"available": stock.available, "inStock": stock.in_stock}
