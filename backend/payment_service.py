"""
Payment webhook reconciliation: provider events → approved enrollments.

Deliveries are at-least-once and arrive in several payload shapes. Every
delivery goes through the same three steps:

  1. normalize_event()  one canonical PaymentEvent, precedence documented below
  2. ledger             payment_webhook_events row keyed by delivery id;
                        an already-processed delivery is a duplicate
  3. apply_event()      idempotent grant. Re-applying a success event never
                        creates a second enrollment or a second payment proof

Store failures propagate to the caller (HTTP 500 → provider redelivers).
Enrollment writes are never retried here; the provider's redelivery and the
admin retry endpoint are the retry mechanism.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

import event_log
import models
from database import StoreTimeout, bounded
from logging_config import get_logger

logger = get_logger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
UNKNOWN = "unknown"

_SUCCEEDED_TYPES = frozenset(("payment.succeeded", "payment_succeeded", "checkout.session.completed"))
_FAILED_TYPES = frozenset(("payment.failed", "payment_failed"))
_SUCCEEDED_STATUSES = frozenset(("succeeded", "completed", "paid"))
_FAILED_STATUSES = frozenset(("failed",))

webhook_outcomes = Counter(
    "media_payment_webhooks_total",
    "Payment webhook deliveries by normalized kind and outcome",
    ["kind", "outcome"],
)


class PaymentStoreError(Exception):
    """The enrollment store failed or timed out while applying an event."""


@dataclass(frozen=True)
class PaymentEvent:
    kind: str                       # succeeded | failed | unknown
    event_type: str
    status: str
    payment_id: Optional[str]
    account_id: Optional[str]
    course_id: Optional[str]
    course_title: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


# ── Signature ────────────────────────────────────────────────────────────────

def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw body, compared in constant time."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip().lower())


def delivery_id(webhook_id: Optional[str], body: bytes) -> str:
    """Ledger key: the provider's webhook-id, or a digest of the exact body."""
    if webhook_id and webhook_id.strip():
        return webhook_id.strip()[:128]
    return "sha256:" + hashlib.sha256(body).hexdigest()


# ── Normalization ────────────────────────────────────────────────────────────

def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _first(*values: Any) -> Any:
    for v in values:
        if v not in (None, ""):
            return v
    return None


def normalize_event(payload: dict) -> PaymentEvent:
    """Map any supported payload shape onto PaymentEvent.

    Precedence (first non-empty wins):
      event type  event_type > type > event
      status      data.status > status > payment.status
      payment id  data.payment_id > payment_id > payment.id > data.id > id
      metadata    data.metadata > metadata > payment.metadata
                  > data.checkout.metadata > checkout.metadata
      account     account_id > user_id   (within each metadata candidate)

    Kind: an explicit succeeded/failed event type decides first; otherwise
    the payment status does; otherwise the event is unknown.
    """
    event_type = str(_first(payload.get("event_type"), payload.get("type"), payload.get("event")) or "")
    status = str(_first(
        _get(payload, "data", "status"), payload.get("status"), _get(payload, "payment", "status"),
    ) or "").lower()
    payment_id = _first(
        _get(payload, "data", "payment_id"),
        payload.get("payment_id"),
        _get(payload, "payment", "id"),
        _get(payload, "data", "id"),
        payload.get("id"),
    )

    candidates = [
        m for m in (
            _get(payload, "data", "metadata"),
            payload.get("metadata"),
            _get(payload, "payment", "metadata"),
            _get(payload, "data", "checkout", "metadata"),
            _get(payload, "checkout", "metadata"),
        )
        if isinstance(m, dict)
    ]
    account_id = _first(*(_first(m.get("account_id"), m.get("user_id")) for m in candidates))
    course_id = _first(*(m.get("course_id") for m in candidates))
    course_title = _first(*(m.get("course_title") for m in candidates))

    if event_type in _SUCCEEDED_TYPES:
        kind = SUCCEEDED
    elif event_type in _FAILED_TYPES:
        kind = FAILED
    elif status in _SUCCEEDED_STATUSES:
        kind = SUCCEEDED
    elif status in _FAILED_STATUSES:
        kind = FAILED
    else:
        kind = UNKNOWN

    return PaymentEvent(
        kind=kind,
        event_type=event_type,
        status=status,
        payment_id=str(payment_id) if payment_id is not None else None,
        account_id=str(account_id) if account_id is not None else None,
        course_id=str(course_id) if course_id is not None else None,
        course_title=course_title,
        failure_reason=_first(_get(payload, "data", "failure_reason"), payload.get("failure_reason")),
        raw=payload,
    )


# ── Enrollment grant ─────────────────────────────────────────────────────────

async def _find_enrollment(db: AsyncSession, account_id: str, course_id: str) -> models.Enrollment | None:
    result = await bounded(db.execute(
        select(models.Enrollment)
        .where(models.Enrollment.student_id == account_id)
        .where(models.Enrollment.course_id == course_id)
    ), "enrollment_lookup")
    return result.scalars().first()


async def _has_proof(db: AsyncSession, payment_id: str) -> bool:
    result = await bounded(db.execute(
        select(models.PaymentProof.id).where(models.PaymentProof.payment_id == payment_id)
    ), "payment_proof_lookup")
    return result.first() is not None


async def grant_enrollment(db: AsyncSession, event: PaymentEvent) -> dict:
    """Move (account, course) to approved exactly once per payment."""
    course = await bounded(db.get(models.Course, event.course_id), "course_lookup")
    if course is None:
        logger.warning("payment_unknown_course", extra={
            "course_id": event.course_id, "payment_id": event.payment_id,
        })
        return {"status": "unknown_course", "course_id": event.course_id}

    enrollment = await _find_enrollment(db, event.account_id, event.course_id)
    if enrollment is not None and enrollment.status == "approved":
        logger.info("payment_already_approved", extra={
            "enrollment_id": enrollment.id, "payment_id": event.payment_id,
        })
        return {"enrollment_id": enrollment.id, "status": "already_approved"}

    now = datetime.utcnow()
    created = enrollment is None
    if created:
        enrollment = models.Enrollment(
            student_id=event.account_id,
            course_id=event.course_id,
            status="approved",
            approved_at=now,
        )
        db.add(enrollment)
    else:
        enrollment.status = "approved"
        enrollment.approved_at = now
    try:
        await bounded(db.flush(), "enrollment_write")
        if not event.payment_id or not await _has_proof(db, event.payment_id):
            db.add(models.PaymentProof(
                enrollment_id=enrollment.id,
                payment_method="dodo",
                payment_id=event.payment_id,
                text_proof=f"DODO Payment ID: {event.payment_id or 'unknown'}",
                notes=f"Payment automatically confirmed via DODO Payments. Course: {event.course_title or event.course_id}",
            ))
        await bounded(db.commit(), "enrollment_commit")
    except IntegrityError:
        # A concurrent delivery of the same payment got there first.
        await db.rollback()
        existing = await _find_enrollment(db, event.account_id, event.course_id)
        if existing is not None and existing.status == "approved":
            logger.info("payment_already_approved", extra={
                "enrollment_id": existing.id, "payment_id": event.payment_id,
            })
            return {"enrollment_id": existing.id, "status": "already_approved"}
        raise

    logger.info("enrollment_approved", extra={
        "enrollment_id": enrollment.id,
        "account_id": event.account_id,
        "course_id": event.course_id,
        "payment_id": event.payment_id,
        "created": created,
    })
    await event_log.audit(
        "PAYMENT_SUCCEEDED",
        user_id=event.account_id,
        resource_type="enrollment",
        resource_id=enrollment.id,
        details={
            "payment_method": "dodo",
            "payment_id": event.payment_id,
            "course_id": event.course_id,
            "auto_approved": True,
        },
    )
    return {"enrollment_id": enrollment.id, "status": "approved"}


async def apply_event(db: AsyncSession, event: PaymentEvent) -> dict:
    """Dispatch one normalized event. Returns the response context."""
    if event.kind == SUCCEEDED:
        if not event.account_id or not event.course_id:
            # Redelivery cannot fix a checkout created without metadata.
            logger.error("payment_missing_metadata", extra={
                "payment_id": event.payment_id, "event_type": event.event_type,
            })
            return {"status": "missing_metadata", "payment_id": event.payment_id}
        return await grant_enrollment(db, event)

    if event.kind == FAILED:
        logger.warning("payment_failed", extra={
            "payment_id": event.payment_id, "account_id": event.account_id,
        })
        if event.account_id:
            await event_log.audit(
                "PAYMENT_FAILED",
                user_id=event.account_id,
                resource_type="payment",
                resource_id=event.payment_id,
                details={
                    "payment_method": "dodo",
                    "payment_id": event.payment_id,
                    "course_id": event.course_id,
                    "failure_reason": event.failure_reason or "Unknown",
                },
            )
        return {"payment_id": event.payment_id, "status": "failed"}

    logger.info("payment_event_unhandled", extra={"event_type": event.event_type})
    return {"event_type": event.event_type, "status": "ignored"}


# ── Ledger ───────────────────────────────────────────────────────────────────

async def _mark(db: AsyncSession, ledger_id: str, **values) -> None:
    # Statement-level update: the ORM row may be expired by an earlier rollback.
    await bounded(db.execute(
        update(models.PaymentWebhookEvent)
        .where(models.PaymentWebhookEvent.id == ledger_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    ), "webhook_ledger_update")
    await bounded(db.commit(), "webhook_ledger_commit")


async def _run(db: AsyncSession, ledger_id: str, event: PaymentEvent) -> dict:
    try:
        context = await apply_event(db, event)
    except (SQLAlchemyError, StoreTimeout) as exc:
        await db.rollback()
        try:
            await _mark(db, ledger_id, status="failed", error=str(exc)[:1000])
        except (SQLAlchemyError, StoreTimeout) as ledger_exc:
            logger.error("webhook_ledger_update_failed", extra={"id": ledger_id, "error": str(ledger_exc)})
        webhook_outcomes.labels(kind=event.kind, outcome="error").inc()
        logger.error("payment_webhook_failed", extra={
            "id": ledger_id, "payment_id": event.payment_id, "error": str(exc),
        })
        raise PaymentStoreError(str(exc)) from exc

    await _mark(db, ledger_id, status="processed", processed_at=datetime.utcnow(), error=None)
    webhook_outcomes.labels(kind=event.kind, outcome=context.get("status", "ok")).inc()
    return context


async def process_delivery(
    db: AsyncSession,
    ledger_id: str,
    event: PaymentEvent,
    raw_body: bytes,
    signature_valid: bool,
) -> dict:
    """Record the delivery in the ledger, then apply it once.

    Raises PaymentStoreError when the store fails; the ledger row is left
    ``failed`` for the admin retry endpoint.
    """
    try:
        ledger = await bounded(db.get(models.PaymentWebhookEvent, ledger_id), "webhook_ledger_lookup")
        if ledger is not None and ledger.status == "processed":
            webhook_outcomes.labels(kind=event.kind, outcome="duplicate").inc()
            logger.info("payment_webhook_duplicate", extra={"id": ledger_id})
            return {"status": "duplicate", "event_type": event.event_type, "payment_id": event.payment_id}

        if ledger is None:
            ledger = models.PaymentWebhookEvent(
                id=ledger_id,
                event_type=event.event_type or UNKNOWN,
                payment_id=event.payment_id,
                payload=raw_body.decode("utf-8"),
                signature_valid=signature_valid,
                attempts=0,
            )
            db.add(ledger)
        ledger.attempts = (ledger.attempts or 0) + 1
        ledger.status = "processing"
        await bounded(db.commit(), "webhook_ledger_commit")
    except IntegrityError:
        # Same delivery id inserted concurrently; the other request owns it.
        await db.rollback()
        webhook_outcomes.labels(kind=event.kind, outcome="duplicate").inc()
        return {"status": "duplicate", "event_type": event.event_type, "payment_id": event.payment_id}
    except (SQLAlchemyError, StoreTimeout) as exc:
        webhook_outcomes.labels(kind=event.kind, outcome="error").inc()
        logger.error("webhook_ledger_unavailable", extra={"id": ledger_id, "error": str(exc)})
        raise PaymentStoreError(str(exc)) from exc

    return await _run(db, ledger_id, event)


async def retry_delivery(db: AsyncSession, ledger: models.PaymentWebhookEvent) -> dict:
    """Re-apply a stored delivery (admin retry). Caller checks it is not processed."""
    ledger_id = ledger.id
    event = normalize_event(json.loads(ledger.payload))
    ledger.attempts = (ledger.attempts or 0) + 1
    ledger.status = "processing"
    await bounded(db.commit(), "webhook_ledger_commit")
    return await _run(db, ledger_id, event)


async def list_deliveries(db: AsyncSession, status: Optional[str] = None, limit: int = 50) -> list:
    q = (
        select(models.PaymentWebhookEvent)
        .order_by(models.PaymentWebhookEvent.received_at.desc())
        .limit(limit)
    )
    if status:
        q = q.where(models.PaymentWebhookEvent.status == status)
    result = await bounded(db.execute(q), "webhook_ledger_list")
    return list(result.scalars().all())
