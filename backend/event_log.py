"""
EventLog — the single port for playback telemetry and audit entries.

Both entry points are best-effort: a failed write is retried once, then
reported as an ``event_log_dropped`` log line and counted. They never raise,
so a telemetry outage can never fail a playback grant or a webhook.

Writes use their own session (not the request's), so an audit row is never
rolled back together with, or blocked behind, the caller's transaction.
"""
import json
from typing import Optional

from prometheus_client import Counter
from tenacity import retry, stop_after_attempt, wait_fixed

import models
from database import SessionLocal, bounded
from logging_config import get_logger

logger = get_logger(__name__)

PLAYBACK_KINDS = frozenset((
    "VIDEO_VIEW", "VIDEO_PLAY", "VIDEO_PAUSE", "VIDEO_COMPLETED", "VIDEO_SEEK",
    "VIDEO_ERROR", "VIDEO_TOKEN_GENERATED", "PIP_ENTER", "VISIBILITY_HIDDEN",
    "WINDOW_BLUR", "CONTEXT_MENU",
))

# Mirrored into the audit log as SECURITY_ALERT rows.
SECURITY_KINDS = frozenset(("SCREENSHOT_ATTEMPT", "DEVTOOLS_OPEN", "VIDEO_DOWNLOAD_ATTEMPT"))

EVENT_KINDS = PLAYBACK_KINDS | SECURITY_KINDS

_failures = Counter(
    "media_event_log_failures_total",
    "Telemetry / audit writes dropped after retry",
    ["sink"],
)


@retry(stop=stop_after_attempt(2), wait=wait_fixed(0.1), reraise=True)
async def _write(rows: list) -> None:
    async with SessionLocal() as db:
        db.add_all(rows)
        await bounded(db.commit(), "event_log.commit")


async def _persist(sink: str, rows: list, context: dict) -> bool:
    try:
        await _write(rows)
        return True
    except Exception as exc:
        _failures.labels(sink=sink).inc()
        logger.error("event_log_dropped", extra={"sink": sink, "error": str(exc), **context})
        return False


async def record(
    kind: str,
    *,
    account_id: Optional[str] = None,
    lesson_id: Optional[str] = None,
    device_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> bool:
    """Append a playback / security event. Returns False if it was dropped."""
    rows = [models.VideoEvent(
        student_id=account_id,
        lesson_id=lesson_id,
        device_id=device_id,
        event_type=kind,
        event_data=json.dumps(details or {}, default=str),
    )]
    if kind in SECURITY_KINDS:
        rows.append(models.AuditLog(
            user_id=account_id,
            event_type="SECURITY_ALERT",
            resource_type="video",
            resource_id=lesson_id,
            details=json.dumps({"alert_type": kind, "device_id": device_id, **(details or {})}, default=str),
        ))
        logger.warning("security_alert", extra={
            "alert_type": kind, "account_id": account_id, "lesson_id": lesson_id, "device_id": device_id,
        })
    return await _persist("video_events", rows, {"event_type": kind, "account_id": account_id})


async def audit(
    event_type: str,
    *,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[dict] = None,
    tracking_code: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> bool:
    """Append an audit entry. Returns False if it was dropped."""
    row = models.AuditLog(
        user_id=user_id,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=resource_id,
        tracking_code=tracking_code,
        ip_address=ip_address,
        user_agent=user_agent,
        details=json.dumps(details or {}, default=str),
    )
    return await _persist("audit_logs", [row], {"event_type": event_type, "user_id": user_id})
