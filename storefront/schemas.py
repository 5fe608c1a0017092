from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class PaymentMethod(str, Enum):
    MANUAL = "manual"
    PAYSTACK = "paystack"
    CASH = "cash"


class AdminOrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ShippingAddress(BaseModel):
    address: str = Field(..., min_length=5, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    state: str = Field(..., min_length=2, max_length=50)
    zip: Optional[str] = Field(None, pattern=r"^[\w\-\s]{3,10}$")
    country: Optional[str] = Field(None, max_length=50)


class OrderItemIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=50, description="Product ID")
    name: str = Field(..., min_length=1, max_length=200)
    color: str = Field(..., min_length=1, max_length=50)
    size: str = Field(..., min_length=1, max_length=20)
    quantity: int = Field(..., ge=1, le=100)
    price: int = Field(..., ge=0, le=1_000_000, description="Client-side unit price; recomputed server side")


class OrderCreate(BaseModel):
    """Checkout payload. Totals are what the client displayed; the server recomputes them."""

    customer_name: str = Field(..., alias="customerName", min_length=2, max_length=100)
    customer_email: EmailStr = Field(..., alias="customerEmail")
    customer_phone: Optional[str] = Field(None, alias="customerPhone", pattern=r"^[\d\s\-\+\(\)]{7,20}$")
    shipping_address: ShippingAddress = Field(..., alias="shippingAddress")
    items: List[OrderItemIn] = Field(..., min_length=1, max_length=50)
    subtotal: int = Field(..., ge=0, le=10_000_000)
    shipping_cost: int = Field(0, alias="shippingCost", ge=0, le=1_000_000)
    discount: int = Field(0, ge=0)
    total: int = Field(..., ge=0, le=10_000_000)
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")
    discount_code: Optional[str] = Field(None, alias="discountCode", max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)

    model_config = {"populate_by_name": True}


class CouponCartItem(BaseModel):
    id: str
    price: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    category: Optional[str] = None


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    cart_total: int = Field(..., alias="cartTotal", ge=0)
    items: Optional[List[CouponCartItem]] = None
    customer_email: Optional[EmailStr] = Field(None, alias="customerEmail")

    model_config = {"populate_by_name": True}


class OrderLookupRequest(BaseModel):
    order_id: str = Field(..., alias="orderId", min_length=3, max_length=50)
    email: EmailStr

    model_config = {"populate_by_name": True}


class OrderStatusUpdate(BaseModel):
    status: AdminOrderStatus


class StockUpdate(BaseModel):
    color: str = Field(..., min_length=1, max_length=50)
    size: str = Field(..., min_length=1, max_length=20)
    quantity: int = Field(..., ge=0, le=1_000_000)
    notes: Optional[str] = Field(None, max_length=500)


class AdminLogin(BaseModel):
    password: str = Field(..., min_length=1, max_length=100)


class Token(BaseModel):
    token: str
    token_type: str = "bearer"
