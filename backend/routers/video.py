"""
Playback routes (require a bearer access token):
  POST /video-url      authenticate → authorize → mint → audit (after response)
  POST /video-events   client-side playback / security telemetry
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

import access_service
import config
import event_log
import session_service
import video_service
from auth_utils import Identity
from dependencies import get_db, get_current_identity, client_meta
from logging_config import get_logger
from rate_limit import limiter, VIDEO_URL_LIMIT, VIDEO_EVENT_LIMIT
from schemas import VideoURLRequest, VideoURLResponse, VideoEventRequest
from token_signer import MissingTokenKeyError

logger = get_logger(__name__)

router = APIRouter()

_DENIAL_MESSAGES = {
    access_service.NOT_FOUND: "Lesson not found",
    access_service.NOT_ENROLLED: "Enrollment not found or not approved",
}


@router.post("/video-url", response_model=VideoURLResponse)
@limiter.limit(VIDEO_URL_LIMIT)
async def generate_video_url(
    request: Request,
    response: Response,
    payload: VideoURLRequest,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Issue short-lived signed playback URLs for one lesson video.

    Each step may short-circuit: 401 (credential or session), 404 (lesson
    unknown or video not part of it), 403 (not owner, no approved enrollment).
    The audit rows are written after the response is sent and can never
    fail it.
    """
    account_id = identity.account_id

    if config.ENFORCE_SINGLE_SESSION:
        check = await session_service.validate(db, identity.token, payload.device_id)
        if not check.is_valid:
            video_service.playback_requests.labels(outcome="session_invalid").inc()
            raise HTTPException(status_code=401, detail={"error": check.message, "reason": check.reason})

    decision = await access_service.authorize(db, account_id, payload.lesson_id, payload.video_id)
    if not decision.eligible:
        status = 404 if decision.reason == access_service.NOT_FOUND else 403
        video_service.playback_requests.labels(outcome=decision.reason.lower()).inc()
        logger.info("playback_denied", extra={
            "account_id": account_id, "lesson_id": payload.lesson_id, "reason": decision.reason,
        })
        raise HTTPException(
            status_code=status,
            detail={"error": _DENIAL_MESSAGES[decision.reason], "reason": decision.reason},
        )

    try:
        grant = video_service.mint_playback(account_id, payload.video_id, payload.device_id)
    except MissingTokenKeyError:
        video_service.playback_requests.labels(outcome="misconfigured").inc()
        logger.error("token_key_missing")
        raise HTTPException(status_code=500, detail="Video signing is not configured")

    meta = client_meta(request)
    background_tasks.add_task(
        video_service.record_access,
        grant,
        account_id=account_id,
        lesson_id=payload.lesson_id,
        video_id=payload.video_id,
        device_id=payload.device_id,
        ip_address=meta.ip_address,
        user_agent=meta.user_agent,
    )

    video_service.playback_requests.labels(outcome="granted").inc()
    logger.info("playback_granted", extra={
        "account_id": account_id,
        "lesson_id": payload.lesson_id,
        "reason": decision.reason,
        "tracking_code": grant.tracking_code,
    })
    response.headers["Cache-Control"] = "no-store"
    return grant.as_response()


@router.post("/video-events", status_code=202)
@limiter.limit(VIDEO_EVENT_LIMIT)
async def report_video_event(
    request: Request,
    payload: VideoEventRequest,
    identity: Identity = Depends(get_current_identity),
):
    """Accept one event from the player's own detectors. Best-effort."""
    meta = client_meta(request)
    recorded = await event_log.record(
        payload.event_type,
        account_id=identity.account_id,
        lesson_id=payload.lesson_id,
        device_id=payload.device_id,
        details={**payload.details, "user_agent": meta.user_agent},
    )
    return {"received": True, "recorded": recorded}
