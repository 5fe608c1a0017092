"""Inventory reservation manager.

Holds stock against in-progress checkouts. The ledger counter in
``variant_stock`` is the available-to-sell quantity: a reservation decrements
it with a single conditional UPDATE, a release gives the quantity back, and a
confirmation only removes the hold bookkeeping. Every change writes a
movement in the same transaction.
"""

from __future__ import annotations

import datetime as dt
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import structlog
from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import movements
from .errors import OutOfStock, StoreError, ValidationFailed
from .models import Order, Product, Reservation, VariantStock
from .orders import PaymentStatus
from .tracking import capture_exception
from .utils.dates import as_utc, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_TTL = dt.timedelta(minutes=30)

_CAS_ATTEMPTS = 5


def variant_key(color: str, size: str) -> str:
    return f"{color}-{size}"


def split_variant_key(key: str) -> tuple[str, str]:
    color, _, size = key.rpartition("-")
    return color, size


@dataclass(frozen=True)
class LineItem:
    product_id: str
    variant_key: str
    quantity: int
    name: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        key = data.get("variant_key") or variant_key(data["color"], data["size"])
        return cls(
            product_id=str(data["product_id"]),
            variant_key=key,
            quantity=int(data["quantity"]),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class ReservationInfo:
    id: int
    product_id: str
    variant_key: str
    quantity: int
    order_id: str
    created_at: dt.datetime
    expires_at: dt.datetime

    @classmethod
    def from_row(cls, row: Reservation) -> "ReservationInfo":
        return cls(
            id=row.id,
            product_id=row.product_id,
            variant_key=row.variant_key,
            quantity=row.quantity,
            order_id=row.order_id,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
        )


@dataclass(frozen=True)
class StockLevel:
    available: int
    reserved: int

    @property
    def in_stock(self) -> bool:
        return self.available > 0


def _merge_items(items: Iterable[LineItem]) -> list[LineItem]:
    merged: dict[tuple[str, str], LineItem] = {}
    for item in items:
        if item.quantity <= 0:
            raise ValidationFailed(
                "Quantity must be greater than 0",
                [{"field": "items.quantity", "message": "Quantity must be greater than 0"}],
            )
        key = (item.product_id, item.variant_key)
        if key in merged:
            prev = merged[key]
            merged[key] = LineItem(prev.product_id, prev.variant_key, prev.quantity + item.quantity, prev.name)
        else:
            merged[key] = item
    # Stable order so concurrent checkouts touch ledger rows in the same sequence.
    return [merged[key] for key in sorted(merged)]


class ReservationManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ttl: dt.timedelta = DEFAULT_TTL,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.ttl = ttl
        self._clock = clock

    @contextmanager
    def _transaction(self, operation: str, **context):
        try:
            with self._session_factory.begin() as db:
                yield db
        except SQLAlchemyError as exc:
            capture_exception(exc, operation=operation, **context)
            raise StoreError(f"Inventory {operation} failed") from exc

    # -----------------------------
    # Reserve
    # -----------------------------

    def reserve(
        self,
        product_id: str,
        variant_key: str,
        quantity: int,
        order_id: str,
        ttl: dt.timedelta | None = None,
        *,
        item_name: str | None = None,
    ) -> ReservationInfo:
        """Hold ``quantity`` units of a variant for ``order_id``.

        Raises OutOfStock carrying the quantity that is actually available.
        """
        if quantity <= 0:
            raise ValidationFailed("Reservation quantity must be positive")

        with self._transaction("reserve", order_id=order_id, product_id=product_id) as db:
            return self._reserve(db, product_id, variant_key, quantity, order_id, ttl or self.ttl, item_name)

    def _reserve(
        self,
        db: Session,
        product_id: str,
        variant_key: str,
        quantity: int,
        order_id: str,
        ttl: dt.timedelta,
        item_name: str | None,
    ) -> ReservationInfo:
        now = self._clock()
        remaining = db.execute(
            update(VariantStock)
            .where(
                VariantStock.product_id == product_id,
                VariantStock.variant_key == variant_key,
                VariantStock.quantity_available >= quantity,
            )
            .values(quantity_available=VariantStock.quantity_available - quantity, updated_at=now)
            .returning(VariantStock.quantity_available)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

        if remaining is None:
            available = db.execute(
                select(VariantStock.quantity_available).where(
                    VariantStock.product_id == product_id,
                    VariantStock.variant_key == variant_key,
                )
            ).scalar_one_or_none()
            logger.info(
                "reservation_denied",
                order_id=order_id,
                product_id=product_id,
                variant_key=variant_key,
                requested=quantity,
                available=available or 0,
            )
            raise OutOfStock(product_id, variant_key, quantity, available or 0, item_name=item_name)

        row = Reservation(
            product_id=product_id,
            variant_key=variant_key,
            quantity=quantity,
            order_id=order_id,
            created_at=now,
            expires_at=now + ttl,
        )
        db.add(row)
        movements.record_movement(
            db,
            product_id=product_id,
            variant_key=variant_key,
            movement_type=movements.RESERVE,
            quantity_change=-quantity,
            quantity_before=remaining + quantity,
            reference_id=order_id,
            reference_type="order",
        )
        db.flush()
        logger.info(
            "reservation_created",
            order_id=order_id,
            product_id=product_id,
            variant_key=variant_key,
            quantity=quantity,
            remaining=remaining,
        )
        return ReservationInfo.from_row(row)

    def reserve_items(
        self, order_id: str, items: Iterable[LineItem], ttl: dt.timedelta | None = None
    ) -> list[ReservationInfo]:
        """Reserve every line item of a checkout, or none of them.

        Items already held are released again if a later item fails.
        """
        held = []
        try:
            for item in _merge_items(items):
                held.append(
                    self.reserve(
                        item.product_id,
                        item.variant_key,
                        item.quantity,
                        order_id,
                        ttl,
                        item_name=item.name,
                    )
                )
        except Exception as exc:
            if held:
                logger.info("reservation_rollback", order_id=order_id, held=len(held), reason=type(exc).__name__)
                try:
                    self.cancel_reservation(order_id, reason="checkout rollback")
                except StoreError as rollback_exc:
                    capture_exception(rollback_exc, operation="reservation_rollback", order_id=order_id)
            raise
        return held

    # -----------------------------
    # Confirm / cancel
    # -----------------------------

    def confirm_reservation(self, order_id: str, items: Iterable[LineItem] | None = None) -> int:
        """Turn the order's holds into a sale. Returns the number of holds removed.

        Calling it again once the holds are gone does nothing.
        """
        with self._transaction("confirm", order_id=order_id) as db:
            return self.confirm_reservation_in(db, order_id, items)

    def confirm_reservation_in(self, db: Session, order_id: str, items: Iterable[LineItem] | None = None) -> int:
        stmt = delete(Reservation).where(Reservation.order_id == order_id)
        if items is not None:
            keys = {(item.product_id, item.variant_key) for item in items}
            if not keys:
                return 0
            stmt = stmt.where(
                or_(
                    *[
                        and_(Reservation.product_id == product_id, Reservation.variant_key == key)
                        for product_id, key in sorted(keys)
                    ]
                )
            )
        rows = db.execute(
            stmt.returning(Reservation.product_id, Reservation.variant_key, Reservation.quantity).execution_options(
                synchronize_session=False
            )
        ).all()
        if not rows:
            logger.debug("confirm_no_reservations", order_id=order_id)
            return 0

        confirmed: dict[tuple[str, str], int] = {}
        for product_id, key, quantity in rows:
            confirmed[(product_id, key)] = confirmed.get((product_id, key), 0) + quantity

        for (product_id, key), quantity in sorted(confirmed.items()):
            current = db.execute(
                select(VariantStock.quantity_available)
                .where(VariantStock.product_id == product_id, VariantStock.variant_key == key)
                .with_for_update()
            ).scalar_one_or_none()
            movements.record_movement(
                db,
                product_id=product_id,
                variant_key=key,
                movement_type=movements.CONFIRM,
                quantity_change=0,
                quantity_before=current or 0,
                reference_id=order_id,
                reference_type="order",
                notes=f"Confirmed sale of {quantity} reserved",
            )
        logger.info("reservation_confirmed", order_id=order_id, holds=len(rows))
        return len(rows)

    def cancel_reservation(self, order_id: str, reason: str = "cancelled") -> int:
        """Release every hold of the order back to the ledger. Returns the number released."""
        with self._transaction("cancel", order_id=order_id) as db:
            return self.cancel_reservation_in(db, order_id, reason=reason)

    def cancel_reservation_in(self, db: Session, order_id: str, reason: str = "cancelled") -> int:
        rows = db.execute(
            delete(Reservation)
            .where(Reservation.order_id == order_id)
            .returning(Reservation.product_id, Reservation.variant_key, Reservation.quantity)
            .execution_options(synchronize_session=False)
        ).all()
        for product_id, key, quantity in sorted(rows):
            self._restore(db, product_id, key, quantity, order_id, reason)
        if rows:
            logger.info("reservation_released", order_id=order_id, holds=len(rows), reason=reason)
        return len(rows)

    def _restore(self, db: Session, product_id: str, key: str, quantity: int, order_id: str, reason: str) -> None:
        restored = db.execute(
            update(VariantStock)
            .where(VariantStock.product_id == product_id, VariantStock.variant_key == key)
            .values(quantity_available=VariantStock.quantity_available + quantity, updated_at=self._clock())
            .returning(VariantStock.quantity_available)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if restored is None:
            # Ledger row vanished under the hold; put the quantity back on a fresh row.
            logger.warning("ledger_row_missing_on_release", product_id=product_id, variant_key=key)
            db.add(VariantStock(product_id=product_id, variant_key=key, quantity_available=quantity))
            restored = quantity
        movements.record_movement(
            db,
            product_id=product_id,
            variant_key=key,
            movement_type=movements.RELEASE,
            quantity_change=quantity,
            quantity_before=restored - quantity,
            reference_id=order_id,
            reference_type="order",
            notes=reason,
        )

    # -----------------------------
    # Expiry sweep
    # -----------------------------

    def cleanup_expired_reservations(self) -> int:
        """Release holds whose TTL has passed, unless their order is already paid.

        All expired holds of one order go in a single transaction, so a payment
        never lands between two lines of the same order being released.
        """
        now = self._clock()
        with self._session_factory() as db:
            order_ids = db.execute(
                select(Reservation.order_id)
                .where(Reservation.expires_at < now)
                .group_by(Reservation.order_id)
                .order_by(func.min(Reservation.expires_at), Reservation.order_id)
            ).scalars().all()

        released = 0
        for order_id in order_ids:
            try:
                with self._transaction("expire", order_id=order_id) as db:
                    released += self._release_expired(db, order_id, now)
            except StoreError:
                logger.error("expired_release_failed", order_id=order_id)

        if released:
            logger.info("expired_reservations_released", released=released, orders=len(order_ids))
        return released

    def _release_expired(self, db: Session, order_id: str, now: dt.datetime) -> int:
        # Serializes with a webhook marking the same order paid (row lock on Postgres).
        payment_status = db.execute(
            select(Order.payment_status).where(Order.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if payment_status == PaymentStatus.PAID:
            logger.info("expired_reservations_kept_for_paid_order", order_id=order_id)
            return 0

        paid = exists().where(Order.id == order_id, Order.payment_status == PaymentStatus.PAID)
        rows = db.execute(
            delete(Reservation)
            .where(Reservation.order_id == order_id, Reservation.expires_at < now, ~paid)
            .returning(Reservation.product_id, Reservation.variant_key, Reservation.quantity)
            .execution_options(synchronize_session=False)
        ).all()
        for product_id, key, quantity in sorted(rows):
            self._restore(db, product_id, key, quantity, order_id, "expired")
        return len(rows)

    # -----------------------------
    # Reads and admin operations
    # -----------------------------

    def get_stock(self, product_id: str, color: str, size: str) -> StockLevel:
        key = variant_key(color, size)
        with self._session_factory() as db:
            available = db.execute(
                select(VariantStock.quantity_available).where(
                    VariantStock.product_id == product_id,
                    VariantStock.variant_key == key,
                )
            ).scalar_one_or_none()
            reserved = db.execute(
                select(func.coalesce(func.sum(Reservation.quantity), 0)).where(
                    Reservation.product_id == product_id,
                    Reservation.variant_key == key,
                )
            ).scalar_one()
        return StockLevel(available=max(0, available or 0), reserved=int(reserved))

    def active_reservations(self, order_id: str | None = None) -> list[ReservationInfo]:
        with self._session_factory() as db:
            stmt = select(Reservation).order_by(Reservation.id)
            if order_id is not None:
                stmt = stmt.where(Reservation.order_id == order_id)
            return [ReservationInfo.from_row(row) for row in db.scalars(stmt)]

    def set_stock(
        self,
        product_id: str,
        variant_key: str,
        quantity: int,
        *,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> dict:
        """Admin stock set: overwrite the sellable quantity of a variant."""
        if quantity < 0:
            raise ValidationFailed(
                "Quantity cannot be negative", [{"field": "quantity", "message": "Must be >= 0"}]
            )

        for _ in range(_CAS_ATTEMPTS):
            with self._transaction("set_stock", product_id=product_id, variant_key=variant_key) as db:
                if db.get(Product, product_id) is None:
                    raise ValidationFailed(f"Product not found: {product_id}", code="INVALID_PRODUCT")
                before = db.execute(
                    select(VariantStock.quantity_available).where(
                        VariantStock.product_id == product_id,
                        VariantStock.variant_key == variant_key,
                    )
                ).scalar_one_or_none()

                if before is None:
                    db.add(VariantStock(product_id=product_id, variant_key=variant_key, quantity_available=quantity))
                    before = 0
                else:
                    swapped = db.execute(
                        update(VariantStock)
                        .where(
                            VariantStock.product_id == product_id,
                            VariantStock.variant_key == variant_key,
                            VariantStock.quantity_available == before,
                        )
                        .values(quantity_available=quantity, updated_at=self._clock())
                        .execution_options(synchronize_session=False)
                    ).rowcount
                    if not swapped:
                        # A checkout moved the counter between the read and the write.
                        continue

                movements.record_movement(
                    db,
                    product_id=product_id,
                    variant_key=variant_key,
                    movement_type=movements.ADJUSTMENT,
                    quantity_change=quantity - before,
                    quantity_before=before,
                    reference_id=reference_id,
                    reference_type="admin",
                    notes=notes,
                )
            logger.info("stock_set", product_id=product_id, variant_key=variant_key, before=before, after=quantity)
            return {"productId": product_id, "variantKey": variant_key, "before": before, "quantity": quantity}

        raise StoreError(f"Stock for {product_id} ({variant_key}) is changing too fast to set; retry")

    def get_low_stock(self, threshold: int = 5) -> list[dict]:
        with self._session_factory() as db:
            rows = db.execute(
                select(VariantStock.product_id, Product.name, VariantStock.variant_key, VariantStock.quantity_available)
                .join(Product, Product.id == VariantStock.product_id, isouter=True)
                .where(VariantStock.quantity_available <= threshold)
                .order_by(VariantStock.quantity_available, VariantStock.product_id, VariantStock.variant_key)
            ).all()

        low_stock = []
        for product_id, name, key, quantity in rows:
            color, size = split_variant_key(key)
            low_stock.append(
                {
                    "productId": product_id,
                    "productName": name,
                    "variantKey": key,
                    "color": color,
                    "size": size,
                    "quantity": quantity,
                    "threshold": threshold,
                }
            )
        return low_stock
