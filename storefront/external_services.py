"""
Helpers for the collaborators the core talks to: the product catalog and the
hosted payment provider (Paystack).
"""
from __future__ import annotations

from typing import Dict, Optional

import requests
import structlog
from sqlalchemy.orm import Session

from .errors import PaymentProviderError, ValidationFailed
from .models import Product, VariantStock

logger = structlog.get_logger(__name__)


def get_product_info(db: Session, product_id: str) -> Dict:
    product = db.query(Product).filter(Product.id == str(product_id)).first()
    if product is None:
        raise ValidationFailed(f"Product not found: {product_id}", code="INVALID_PRODUCT")
    return {
        "id": product.id,
        "name": product.name,
        "price": int(product.price),
        "category": product.category,
    }


def get_variant_stock(db: Session, product_id: str, variant_key: str) -> int:
    """Display-only stock figure; checkout goes through the reservation manager."""
    quantity = (
        db.query(VariantStock.quantity_available)
        .filter(VariantStock.product_id == product_id, VariantStock.variant_key == variant_key)
        .scalar()
    )
    return int(quantity or 0)


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        *,
        public_key: str = "",
        base_url: str = "https://api.paystack.co",
        callback_base_url: str = "",
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.secret_key = secret_key
        self.public_key = public_key
        self.base_url = base_url.rstrip("/")
        self.callback_base_url = callback_base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def initialize_transaction(self, order_id: str, email: str, amount: int) -> Dict:
        """Start a hosted payment. ``amount`` is in major units; Paystack takes minor units."""
        if not self.secret_key:
            raise PaymentProviderError("Paystack is not configured. Set PAYSTACK_SECRET_KEY.")

        payload = {
            "email": email,
            "amount": int(amount) * 100,
            "reference": order_id,
            "callback_url": f"{self.callback_base_url}/order-confirmation?order={order_id}&status=success",
            "metadata": {
                "order_id": order_id,
                "custom_fields": [{"display_name": "Order ID", "variable_name": "order_id", "value": order_id}],
            },
        }
        try:
            resp = self._session.post(
                f"{self.base_url}/transaction/initialize",
                json=payload,
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise PaymentProviderError(f"Payment provider is unavailable: {str(e)}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code != 200 or not body.get("status"):
            logger.warning("paystack_initialize_failed", order_id=order_id, status_code=resp.status_code)
            raise PaymentProviderError(body.get("message") or "Paystack initialization failed")

        data = body.get("data") or {}
        return {
            "reference": data.get("reference") or order_id,
            "access_code": data.get("access_code"),
            "authorization_url": data.get("authorization_url"),
            "publicKey": self.public_key,
        }
