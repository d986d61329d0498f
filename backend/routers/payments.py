"""
Payment provider webhook:
  POST /payments/webhook

Order matters: the raw body is read and its signature checked before any
parsing, so an unsigned body never reaches the JSON decoder or the store.
"""
import json

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

import config
import payment_service
from dependencies import get_db
from logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADERS = ("x-dodo-signature", "webhook-signature")


@router.post("/payments/webhook")
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if request.headers.get(h)), None)

    signature_valid = payment_service.verify_signature(body, signature, config.DODO_WEBHOOK_SECRET)
    if not signature_valid:
        if not config.WEBHOOK_PERMISSIVE_MODE:
            payment_service.webhook_outcomes.labels(kind=payment_service.UNKNOWN, outcome="rejected").inc()
            logger.warning("webhook_signature_invalid", extra={"signature_present": signature is not None})
            raise HTTPException(status_code=401, detail="Invalid signature")
        logger.warning("webhook_signature_bypassed", extra={
            "signature_present": signature is not None,
            "permissive_mode": True,
        })

    try:
        payload = json.loads(body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    event = payment_service.normalize_event(payload)
    ledger_id = payment_service.delivery_id(request.headers.get("webhook-id"), body)
    logger.info("payment_webhook_received", extra={
        "id": ledger_id,
        "event_type": event.event_type,
        "kind": event.kind,
        "payment_id": event.payment_id,
    })

    try:
        context = await payment_service.process_delivery(db, ledger_id, event, body, signature_valid)
    except payment_service.PaymentStoreError:
        raise HTTPException(status_code=500, detail="Payment could not be recorded; please retry")
    return {"received": True, **context}
