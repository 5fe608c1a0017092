import json

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from ..config import Settings
from ..dependencies import get_settings, get_webhooks
from ..errors import SignatureInvalid, ValidationFailed
from ..payments import WebhookProcessor, parse_event, verify_signature
from ..security import client_address

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)

SIGNATURE_HEADER = "x-paystack-signature"


@router.post("/webhook")
async def paystack_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    webhooks: WebhookProcessor = Depends(get_webhooks),
):
    """Provider callback. No CSRF: authenticity comes from the body signature.

    The signature is checked over the raw bytes before anything is parsed.
    """
    raw = await request.body()
    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), settings.paystack_secret_key):
        logger.warning("webhook_signature_invalid", client=client_address(request), size=len(raw))
        raise SignatureInvalid("Unauthorized")

    try:
        payload = json.loads(raw)
    except ValueError:
        raise ValidationFailed("Malformed webhook payload")

    event = parse_event(payload)
    outcome = await run_in_threadpool(webhooks.process_webhook, event)
    return {"received": True, "outcome": outcome.value, "handled": outcome.handled}
