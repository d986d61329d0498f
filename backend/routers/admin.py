"""
Admin-only routes (require X-Admin-Key), plus the public health probe:
  GET    /health
  GET    /admin/audit-log
  GET    /admin/security-alerts
  GET    /admin/trace
  GET    /admin/sessions/{account_id}
  DELETE /admin/sessions/{account_id}
  GET    /admin/payments/webhooks
  POST   /admin/payments/webhooks/{event_id}/retry
"""
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import or_, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

import models
import payment_service
import redis_service
import session_service
from dependencies import get_db, require_admin
from rate_limit import limiter, ADMIN_WRITE_LIMIT
from schemas import AuditLogOut, SessionOut, WebhookEventOut

router = APIRouter()


# ── Health ─────────────────────────────────────────────────────────────────────

@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Deep health check — verifies the critical dependencies:
    - Database (SELECT 1)
    - Redis (PING)

    Returns 200 only if both are reachable; 503 otherwise with details.
    """
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    try:
        r = await redis_service.get_redis()
        await r.ping()
        checks["redis"] = "ok"
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    all_ok = all(v == "ok" for v in checks.values())
    body = {"status": "healthy" if all_ok else "degraded", **checks}
    if not all_ok:
        return JSONResponse(status_code=503, content=body)
    return body


# ── Audit & forensics ──────────────────────────────────────────────────────────

@router.get("/admin/audit-log", response_model=list[AuditLogOut])
async def get_audit_log(
    event_type: str | None = None,
    user_id: str | None = None,
    before_id: int | None = None,
    limit: int = Query(default=100, le=1000),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin),
    response: Response = None,
):
    """List audit log entries, newest first.

    Cursor pagination: pass `before_id` (the last ID from the previous page);
    the `X-Next-Cursor` response header carries the value for the next call.
    """
    q = select(models.AuditLog).order_by(models.AuditLog.id.desc()).limit(limit)
    if event_type:
        q = q.where(models.AuditLog.event_type == event_type)
    if user_id:
        q = q.where(models.AuditLog.user_id == user_id)
    if before_id is not None:
        q = q.where(models.AuditLog.id < before_id)
    result = await db.execute(q)
    rows = result.scalars().all()
    if rows and response is not None:
        response.headers["X-Next-Cursor"] = str(rows[-1].id)
    return rows


@router.get("/admin/security-alerts", response_model=list[AuditLogOut])
async def get_security_alerts(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    limit: int = Query(default=100, le=1000),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin),
):
    since = datetime.utcnow() - timedelta(hours=hours)
    result = await db.execute(
        select(models.AuditLog)
        .where(models.AuditLog.event_type == "SECURITY_ALERT")
        .where(models.AuditLog.timestamp >= since)
        .order_by(models.AuditLog.timestamp.desc())
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/admin/trace", response_model=list[AuditLogOut])
async def trace_leak(
    code: str = Query(..., min_length=8, max_length=64),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin),
):
    """Resolve a code read off a leaked recording to the playback grants.

    A full tracking code matches exactly one grant; a watermark code
    (UID-XXXXXXXX-YYYYYY) matches every grant issued to that account/device.
    """
    code = code.strip()
    pattern = code.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "-%"
    result = await db.execute(
        select(models.AuditLog)
        .where(models.AuditLog.event_type == "VIDEO_ACCESS")
        .where(or_(
            models.AuditLog.tracking_code == code,
            models.AuditLog.tracking_code.like(pattern, escape="\\"),
        ))
        .order_by(models.AuditLog.timestamp.desc())
        .limit(500)
    )
    rows = result.scalars().all()
    if not rows:
        raise HTTPException(status_code=404, detail="No playback grant matches this code")
    return rows


# ── Sessions ───────────────────────────────────────────────────────────────────

@router.get("/admin/sessions/{account_id}", response_model=list[SessionOut])
async def get_account_sessions(
    account_id: str,
    limit: int = Query(default=50, le=500),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin),
):
    return await session_service.list_sessions(db, account_id, limit=limit)


@router.delete("/admin/sessions/{account_id}")
@limiter.limit(ADMIN_WRITE_LIMIT)
async def revoke_account_sessions(
    request: Request,
    account_id: str,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin),
):
    revoked = await session_service.revoke_all(db, account_id)
    return {"account_id": account_id, "revoked": revoked}


# ── Payment webhook ledger ─────────────────────────────────────────────────────

@router.get("/admin/payments/webhooks", response_model=list[WebhookEventOut])
async def get_payment_webhooks(
    status: str | None = None,
    limit: int = Query(default=50, le=500),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin),
):
    """List payment webhook deliveries, newest first.

    Filter by ?status=failed to see only deliveries that need attention.
    """
    return await payment_service.list_deliveries(db, status=status, limit=limit)


@router.post("/admin/payments/webhooks/{event_id}/retry")
@limiter.limit(ADMIN_WRITE_LIMIT)
async def retry_payment_webhook(
    request: Request,
    event_id: str,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin),
):
    """Re-apply a failed (or stuck) delivery from its stored payload.

    Returns 409 if the delivery has already been processed successfully.
    """
    event = await db.get(models.PaymentWebhookEvent, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    if event.status == "processed":
        raise HTTPException(status_code=409, detail="Event already processed")

    try:
        context = await payment_service.retry_delivery(db, event)
    except payment_service.PaymentStoreError as exc:
        return JSONResponse(status_code=500, content={"error": "Retry failed", "detail": str(exc)[:200]})
    await db.refresh(event)
    return {"status": event.status, "attempts": event.attempts, "result": context}
