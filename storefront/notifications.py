"""Customer notifications.

Order emails are rendered and sent by the notification service; this side only
publishes the events it consumes. Publishing is fire-and-forget: a failure is
logged and never undoes the state change that triggered it.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog

from .messaging import publish_event
from .utils.dates import isoformat_z, utcnow

logger = structlog.get_logger(__name__)

ORDER_CONFIRMED = "order.confirmed"
ORDER_STATUS_UPDATED = "order.status_updated"


class Notifier:
    def __init__(self, publisher: Optional[Callable[[str, dict], None]] = None, enabled: bool = True) -> None:
        self._publish = publisher or publish_event
        self.enabled = enabled

    def _send(self, routing_key: str, payload: dict) -> bool:
        if not self.enabled:
            logger.debug("notification_skipped", routing_key=routing_key, order_id=payload.get("order_id"))
            return False
        payload = {"event": routing_key, "occurred_at": isoformat_z(utcnow()), **payload}
        try:
            self._publish(routing_key, payload)
        except Exception:
            logger.exception("notification_failed", routing_key=routing_key, order_id=payload.get("order_id"))
            return False
        logger.info("notification_published", routing_key=routing_key, order_id=payload.get("order_id"))
        return True

    def send_order_confirmation(self, order: dict) -> bool:
        return self._send(
            ORDER_CONFIRMED,
            {
                "order_id": order["id"],
                "customer_name": order.get("customerName"),
                "customer_email": order.get("customerEmail"),
                "items": order.get("items"),
                "total": order.get("total"),
                "payment_status": order.get("paymentStatus"),
            },
        )

    def send_order_status_update(self, order: dict, new_status: str) -> bool:
        return self._send(
            ORDER_STATUS_UPDATED,
            {
                "order_id": order["id"],
                "customer_name": order.get("customerName"),
                "customer_email": order.get("customerEmail"),
                "status": new_status,
            },
        )
