from __future__ import annotations

from typing import Any, List, Optional

import structlog
from sqlalchemy.orm import Session

from .models import AuditLog, WebhookLog

logger = structlog.get_logger(__name__)


def log_audit(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    old_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
    performed_by: str = "system",
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_data=old_data,
        new_data=new_data,
        performed_by=performed_by,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:300] or None,
    )
    db.add(entry)
    db.flush()
    logger.info("audit", action=action, entity_type=entity_type, entity_id=entity_id, performed_by=performed_by)
    return entry


def log_webhook_event(
    db: Session,
    *,
    event_type: str,
    reference: Optional[str],
    amount: Optional[int],
    customer_email: Optional[str],
    raw_data: Any,
) -> WebhookLog:
    """Store an inbound payment event as received, matched to an order or not."""
    entry = WebhookLog(
        event_type=event_type,
        reference=reference,
        amount=amount,
        customer_email=customer_email,
        raw_data=raw_data,
    )
    db.add(entry)
    db.flush()
    return entry


def list_audit_logs(db: Session, entity_id: Optional[str] = None, limit: int = 100) -> List[AuditLog]:
    q = db.query(AuditLog)
    if entity_id is not None:
        q = q.filter(AuditLog.entity_id == entity_id)
    return q.order_by(AuditLog.id.desc()).limit(limit).all()


def list_webhook_logs(db: Session, reference: Optional[str] = None, limit: int = 100) -> List[WebhookLog]:
    q = db.query(WebhookLog)
    if reference is not None:
        q = q.filter(WebhookLog.reference == reference)
    return q.order_by(WebhookLog.id.desc()).limit(limit).all()
