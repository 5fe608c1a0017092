"""Movement log: the append-only audit of stock ledger changes.

Movements are written in the same transaction as the ledger change they
describe and are never updated or deleted.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import Movement, VariantStock
from .utils.dates import isoformat_z

RESERVE = "reserve"
RELEASE = "release"
CONFIRM = "confirm"
ADJUSTMENT = "adjustment"

MOVEMENT_TYPES = (RESERVE, RELEASE, CONFIRM, ADJUSTMENT)


def record_movement(
    db: Session,
    *,
    product_id: str,
    variant_key: str,
    movement_type: str,
    quantity_change: int,
    quantity_before: int,
    reference_id: str | None = None,
    reference_type: str | None = None,
    notes: str | None = None,
) -> Movement:
    if movement_type not in MOVEMENT_TYPES:
        raise ValueError(f"unknown movement type: {movement_type}")

    movement = Movement(
        product_id=product_id,
        variant_key=variant_key,
        movement_type=movement_type,
        quantity_change=quantity_change,
        quantity_before=quantity_before,
        quantity_after=quantity_before + quantity_change,
        reference_id=reference_id,
        reference_type=reference_type,
        notes=notes,
    )
    db.add(movement)
    db.flush()
    return movement


def list_movements(
    db: Session,
    *,
    product_id: str | None = None,
    variant_key: str | None = None,
    reference_id: str | None = None,
    movement_type: str | None = None,
    limit: int = 100,
) -> list[Movement]:
    stmt = select(Movement)
    if product_id is not None:
        stmt = stmt.where(Movement.product_id == product_id)
    if variant_key is not None:
        stmt = stmt.where(Movement.variant_key == variant_key)
    if reference_id is not None:
        stmt = stmt.where(Movement.reference_id == reference_id)
    if movement_type is not None:
        stmt = stmt.where(Movement.movement_type == movement_type)
    stmt = stmt.order_by(Movement.id.desc()).limit(limit)
    return list(db.scalars(stmt))


def reconcile_variant(db: Session, product_id: str, variant_key: str) -> dict:
    """Replay a variant's movements and compare them with the ledger.

    Each movement must start where the previous one ended, and the last one
    must end at the ledger's current quantity.
    """
    stock = db.scalars(
        select(VariantStock).where(
            VariantStock.product_id == product_id,
            VariantStock.variant_key == variant_key,
        )
    ).first()
    movements = list(
        db.scalars(
            select(Movement)
            .where(Movement.product_id == product_id, Movement.variant_key == variant_key)
            .order_by(Movement.id)
        )
    )

    discrepancies = []
    previous = None
    for movement in movements:
        if movement.quantity_after != movement.quantity_before + movement.quantity_change:
            discrepancies.append({"movementId": movement.id, "problem": "after != before + change"})
        if movement.quantity_after < 0:
            discrepancies.append({"movementId": movement.id, "problem": "negative quantity"})
        if previous is not None and movement.quantity_before != previous.quantity_after:
            discrepancies.append(
                {
                    "movementId": movement.id,
                    "problem": "chain break",
                    "expectedBefore": previous.quantity_after,
                    "actualBefore": movement.quantity_before,
                }
            )
        previous = movement

    ledger_quantity = stock.quantity_available if stock is not None else None
    last_quantity = movements[-1].quantity_after if movements else None
    if movements and ledger_quantity != last_quantity:
        discrepancies.append(
            {"problem": "ledger mismatch", "ledger": ledger_quantity, "lastMovement": last_quantity}
        )

    return {
        "productId": product_id,
        "variantKey": variant_key,
        "ledgerQuantity": ledger_quantity,
        "lastMovementQuantity": last_quantity,
        "movementCount": len(movements),
        "consistent": not discrepancies,
        "discrepancies": discrepancies,
    }


def reconcile_all(db: Session) -> list[dict]:
    keys = db.execute(
        select(VariantStock.product_id, VariantStock.variant_key).order_by(
            VariantStock.product_id, VariantStock.variant_key
        )
    ).all()
    return [reconcile_variant(db, product_id, variant_key) for product_id, variant_key in keys]


def net_deducted_by_variant(db: Session, reference_id: str) -> dict[tuple[str, str], int]:
    """Units still taken out of the ledger for an order, per variant (reserved minus released)."""
    rows = db.execute(
        select(Movement.product_id, Movement.variant_key, func.sum(Movement.quantity_change))
        .where(
            Movement.reference_id == reference_id,
            Movement.movement_type.in_((RESERVE, RELEASE)),
        )
        .group_by(Movement.product_id, Movement.variant_key)
    ).all()
    return {(product_id, key): -int(total) for product_id, key, total in rows}


def movement_to_dict(movement: Movement) -> dict:
    return {
        "id": movement.id,
        "productId": movement.product_id,
        "variantKey": movement.variant_key,
        "movementType": movement.movement_type,
        "quantityChange": movement.quantity_change,
        "quantityBefore": movement.quantity_before,
        "quantityAfter": movement.quantity_after,
        "referenceId": movement.reference_id,
        "referenceType": movement.reference_type,
        "notes": movement.notes,
        "createdAt": isoformat_z(movement.created_at),
    }
