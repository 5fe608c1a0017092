from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from .utils.dates import utcnow

Base = declarative_base()

# JSONB on Postgres, serialized TEXT on SQLite; the ORM always hands back parsed values.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Product(Base):
    """Catalog row. Owned by the catalog service; the core only reads name, price and category."""

    __tablename__ = "products"

    id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False)
    category = Column(String(50), index=True)
    price = Column(Integer, nullable=False)
    colors = Column(JSONType, default=list)
    sizes = Column(JSONType, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class VariantStock(Base):
    """Stock ledger: sellable quantity per (product, variant).

    quantity_available is pre-decremented when a reservation is made, so it is
    always the available-to-sell figure.
    """

    __tablename__ = "variant_stock"
    __table_args__ = (
        UniqueConstraint("product_id", "variant_key", name="uq_variant_stock_product_variant"),
        CheckConstraint("quantity_available >= 0", name="ck_variant_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    product_id = Column(String(50), ForeignKey("products.id"), nullable=False, index=True)
    variant_key = Column(String(100), nullable=False)
    quantity_available = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Reservation(Base):
    """A checkout hold. Rows are only ever inserted or deleted, never updated."""

    __tablename__ = "inventory_reservations"

    id = Column(Integer, primary_key=True)
    product_id = Column(String(50), nullable=False, index=True)
    variant_key = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    # No FK: the hold is taken before the order row exists.
    order_id = Column(String(50), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class Movement(Base):
    """Append-only audit of every stock ledger change."""

    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True)
    product_id = Column(String(50), nullable=False, index=True)
    variant_key = Column(String(100), nullable=False)
    movement_type = Column(String(20), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reference_id = Column(String(50))
    reference_type = Column(String(30))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(50), primary_key=True)
    customer_name = Column(String(100), nullable=False)
    customer_email = Column(String(254), nullable=False, index=True)
    customer_phone = Column(String(30))
    shipping_address = Column(JSONType, nullable=False)
    items = Column(JSONType, nullable=False)
    subtotal = Column(Integer, nullable=False)
    shipping_cost = Column(Integer, nullable=False, default=0)
    discount = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)
    payment_method = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_reference = Column(String(100), index=True)
    order_status = Column(String(20), nullable=False, default="pending", index=True)
    discount_code = Column(String(50))
    notes = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(50), primary_key=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    type = Column(String(20), nullable=False)
    value = Column(Integer, nullable=False)
    min_order_amount = Column(Integer, nullable=False, default=0)
    max_discount_amount = Column(Integer)
    usage_limit = Column(Integer)
    usage_count = Column(Integer, nullable=False, default=0)
    per_customer_limit = Column(Integer, default=1)
    start_date = Column(Date)
    end_date = Column(Date)
    applicable_categories = Column(JSONType, default=list)
    applicable_products = Column(JSONType, default=list)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CouponUsage(Base):
    __tablename__ = "coupon_usage"

    id = Column(Integer, primary_key=True)
    coupon_id = Column(String(50), ForeignKey("coupons.id"), nullable=False, index=True)
    order_id = Column(String(50), nullable=False)
    customer_email = Column(String(254), nullable=False)
    discount_amount = Column(Integer, nullable=False)
    used_at = Column(DateTime(timezone=True), default=utcnow)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(50), nullable=False)
    reference = Column(String(100), index=True)
    amount = Column(Integer)
    customer_email = Column(String(254))
    raw_data = Column(JSONType)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(50), index=True)
    old_data = Column(JSONType)
    new_data = Column(JSONType)
    performed_by = Column(String(30))
    ip_address = Column(String(64))
    user_agent = Column(String(300))
    created_at = Column(DateTime(timezone=True), default=utcnow)
