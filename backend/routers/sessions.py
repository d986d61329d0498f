"""
Session routes (require a bearer access token; the token itself is the
session token):
  POST /sessions            register this sign-in, replacing any other
  POST /sessions/validate   is this sign-in still the active one?
  POST /sessions/signout    end this sign-in
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

import session_service
from auth_utils import Identity
from dependencies import get_db, get_current_identity, client_meta
from rate_limit import limiter, SESSION_LIMIT
from schemas import (
    SessionCreateRequest,
    SessionValidateRequest,
    SessionCreatedResponse,
    SessionValidationResponse,
)

router = APIRouter()


@router.post("/sessions", response_model=SessionCreatedResponse)
@limiter.limit(SESSION_LIMIT)
async def create_session(
    request: Request,
    payload: SessionCreateRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    meta = client_meta(request)
    created = await session_service.create_or_replace(
        db,
        identity.account_id,
        payload.device_id,
        identity.token,
        user_agent=meta.user_agent,
        ip_address=meta.ip_address,
    )
    return SessionCreatedResponse(
        session_id=created.session_id,
        is_new=created.is_new,
        replaced_count=created.replaced_count,
    )


@router.post("/sessions/validate", response_model=SessionValidationResponse)
@limiter.limit(SESSION_LIMIT)
async def validate_session(
    request: Request,
    payload: SessionValidateRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Always 200; ``is_valid`` and ``reason`` carry the outcome."""
    result = await session_service.validate(db, identity.token, payload.device_id)
    return SessionValidationResponse(
        is_valid=result.is_valid,
        reason=result.reason,
        message=result.message,
        session_id=result.session_id,
    )


@router.post("/sessions/signout")
@limiter.limit(SESSION_LIMIT)
async def sign_out(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    invalidated = await session_service.invalidate(db, identity.token)
    return {"success": True, "invalidated": invalidated}
