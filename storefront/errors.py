"""Error taxonomy for the storefront core.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, so routes can let them propagate to the handlers
registered in ``main.py``.
"""

from __future__ import annotations


class StorefrontError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class OutOfStock(StorefrontError):
    """Reservation denied; recoverable by lowering the requested quantity."""

    code = "OUT_OF_STOCK"
    status_code = 409

    def __init__(
        self,
        product_id: str,
        variant_key: str,
        requested: int,
        available: int,
        item_name: str | None = None,
    ) -> None:
        label = item_name or product_id
        if available > 0:
            message = f"Insufficient stock for {label} ({variant_key}). Only {available} left, requested {requested}"
        else:
            message = f"{label} ({variant_key}) is out of stock"
        super().__init__(message)
        self.product_id = product_id
        self.variant_key = variant_key
        self.requested = requested
        self.available = available
        self.item_name = item_name

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["item"] = {
            "productId": self.product_id,
            "variantKey": self.variant_key,
            "name": self.item_name,
            "requested": self.requested,
        }
        data["available"] = self.available
        return data


class OrderNotFound(StorefrontError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class SignatureInvalid(StorefrontError):
    code = "SIGNATURE_INVALID"
    status_code = 401


class ValidationFailed(StorefrontError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: list[dict] | None = None, *, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.details = details or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.details:
            data["details"] = self.details
        return data


class StoreError(StorefrontError):
    """Backing-store failure during a mutation."""

    code = "STORE_ERROR"
    status_code = 500


class PaymentProviderError(StorefrontError):
    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502


class RateLimited(StorefrontError):
    code = "RATE_LIMIT"
    status_code = 429


class CsrfRejected(StorefrontError):
    code = "CSRF_INVALID"
    status_code = 403
