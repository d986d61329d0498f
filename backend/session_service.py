"""
SessionGuard — single active session per account.

Lifecycle of a row in ``user_sessions``:

    NO_SESSION ──create──▶ ACTIVE ──another sign-in──▶ REPLACED
                             │ ├──sign-out──────────▶ LOGGED_OUT
                             │ ├──idle timeout──────▶ EXPIRED
                             │ ├──device mismatch───▶ DEVICE_MISMATCH
                             │ └──admin revoke──────▶ ADMIN_REVOKED

The invariant "at most one active row per account" is held by the partial
unique index ``uq_user_sessions_one_active``; the code below only has to make
sure that the later of two racing sign-ins is the one left active.

Redis carries a best-effort "replaced" flag per token hash so validate() can
reject a superseded session without a DB round-trip. The DB answer is
authoritative; the flag is only ever a negative hint.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

import config
import models
import redis_service
from auth_utils import hash_session_token
from database import bounded
from logging_config import get_logger

logger = get_logger(__name__)

# Invalidation reasons stored on the row
SESSION_REPLACED = "SESSION_REPLACED"
LOGGED_OUT = "LOGGED_OUT"
EXPIRED = "EXPIRED"
DEVICE_MISMATCH = "DEVICE_MISMATCH"
ADMIN_REVOKED = "ADMIN_REVOKED"

# Validation reasons returned to callers
SESSION_INACTIVE = "SESSION_INACTIVE"
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"

SESSION_MESSAGES = {
    SESSION_REPLACED: "You were signed out because your account was opened on another device.",
    DEVICE_MISMATCH: "Your session was ended because the device does not match.",
    SESSION_INACTIVE: "Your session has ended. Please sign in again.",
    SESSION_NOT_FOUND: "No active session was found. Please sign in again.",
}


@dataclass(frozen=True)
class SessionCreated:
    session_id: int
    is_new: bool
    replaced_count: int


@dataclass(frozen=True)
class SessionValidation:
    is_valid: bool
    reason: Optional[str] = None
    account_id: Optional[str] = None
    session_id: Optional[int] = None

    @property
    def message(self) -> Optional[str]:
        if self.is_valid:
            return None
        return SESSION_MESSAGES.get(self.reason, SESSION_MESSAGES[SESSION_INACTIVE])


async def _find_by_hash(db: AsyncSession, token_hash: str) -> models.UserSession | None:
    result = await bounded(db.execute(
        select(models.UserSession)
        .where(models.UserSession.token_hash == token_hash)
        .execution_options(populate_existing=True)
    ), "session_lookup")
    return result.scalars().first()


def _deactivate(row: models.UserSession, reason: str, now: datetime) -> None:
    row.is_active = False
    row.invalidated_at = now
    row.invalidation_reason = reason


async def _replace_active(
    db: AsyncSession,
    account_id: str,
    token_hash: str,
    device_id: Optional[str],
    user_agent: Optional[str],
    ip_address: Optional[str],
) -> tuple[SessionCreated, list[str]]:
    existing = await _find_by_hash(db, token_hash)
    if existing is not None:
        return SessionCreated(existing.id, False, 0), []

    result = await bounded(db.execute(
        select(models.UserSession.id, models.UserSession.token_hash)
        .where(models.UserSession.account_id == account_id)
        .where(models.UserSession.is_active == True)  # noqa: E712
    ), "session_active_lookup")
    active = result.all()
    replaced_ids = [row[0] for row in active]
    now = datetime.utcnow()

    if replaced_ids:
        await bounded(db.execute(
            update(models.UserSession)
            .where(models.UserSession.id.in_(replaced_ids))
            .values(is_active=False, invalidated_at=now, invalidation_reason=SESSION_REPLACED)
            .execution_options(synchronize_session=False)
        ), "session_deactivate")

    new_session = models.UserSession(
        account_id=account_id,
        token_hash=token_hash,
        device_id=device_id,
        user_agent=user_agent,
        ip_address=ip_address,
        created_at=now,
        last_seen_at=now,
        is_active=True,
    )
    db.add(new_session)
    await bounded(db.flush(), "session_insert")

    if replaced_ids:
        await bounded(db.execute(
            update(models.UserSession)
            .where(models.UserSession.id.in_(replaced_ids))
            .values(replaced_by_id=new_session.id)
            .execution_options(synchronize_session=False)
        ), "session_link_replaced")

    await bounded(db.commit(), "session_commit")
    return SessionCreated(new_session.id, True, len(replaced_ids)), [row[1] for row in active]


async def create_or_replace(
    db: AsyncSession,
    account_id: str,
    device_id: Optional[str],
    session_token: str,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> SessionCreated:
    """Register *session_token* as the account's only active session.

    Every previously active session of the account ends as SESSION_REPLACED.
    Registering a token that is already known is a success with is_new=False.
    A concurrent sign-in that wins the one-active index is itself replaced by
    re-running the deactivate + insert once, so the later caller ends active.
    """
    token_hash = hash_session_token(session_token)
    for attempt in range(2):
        try:
            created, replaced_hashes = await _replace_active(
                db, account_id, token_hash, device_id, user_agent, ip_address,
            )
            break
        except IntegrityError:
            await db.rollback()
            existing = await _find_by_hash(db, token_hash)
            if existing is not None:
                return SessionCreated(existing.id, False, 0)
            if attempt:
                raise
            logger.warning("session_create_conflict_retry", extra={"account_id": account_id})

    if created.replaced_count:
        await redis_service.mark_session_replaced(replaced_hashes)
        await redis_service.publish_session_event(
            account_id, "session_replaced", replaced=created.replaced_count,
        )
        logger.info("session_replaced", extra={
            "account_id": account_id,
            "session_id": created.session_id,
            "replaced": created.replaced_count,
        })
    elif created.is_new:
        logger.info("session_created", extra={"account_id": account_id, "session_id": created.session_id})
    return created


async def validate(
    db: AsyncSession,
    session_token: str,
    device_id: Optional[str] = None,
) -> SessionValidation:
    token_hash = hash_session_token(session_token)
    if await redis_service.is_session_replaced(token_hash):
        return SessionValidation(False, SESSION_REPLACED)

    row = await _find_by_hash(db, token_hash)
    if row is None:
        return SessionValidation(False, SESSION_NOT_FOUND)
    if not row.is_active:
        reason = SESSION_REPLACED if row.invalidation_reason == SESSION_REPLACED else SESSION_INACTIVE
        return SessionValidation(False, reason, row.account_id, row.id)

    now = datetime.utcnow()
    if config.SESSION_ENFORCE_DEVICE and device_id and row.device_id and row.device_id != device_id:
        _deactivate(row, DEVICE_MISMATCH, now)
        await bounded(db.commit(), "session_commit")
        logger.warning("session_device_mismatch", extra={
            "account_id": row.account_id, "session_id": row.id, "device_id": device_id,
        })
        return SessionValidation(False, DEVICE_MISMATCH, row.account_id, row.id)

    if config.SESSION_IDLE_HOURS and row.last_seen_at \
            and now - row.last_seen_at > timedelta(hours=config.SESSION_IDLE_HOURS):
        _deactivate(row, EXPIRED, now)
        await bounded(db.commit(), "session_commit")
        logger.info("session_expired", extra={"account_id": row.account_id, "session_id": row.id})
        return SessionValidation(False, SESSION_INACTIVE, row.account_id, row.id)

    row.last_seen_at = now
    await bounded(db.commit(), "session_commit")
    return SessionValidation(True, None, row.account_id, row.id)


async def invalidate(db: AsyncSession, session_token: str) -> int:
    """Sign-out. Unknown or already-inactive tokens count as success (0 rows)."""
    result = await bounded(db.execute(
        update(models.UserSession)
        .where(models.UserSession.token_hash == hash_session_token(session_token))
        .where(models.UserSession.is_active == True)  # noqa: E712
        .values(is_active=False, invalidated_at=datetime.utcnow(), invalidation_reason=LOGGED_OUT)
        .execution_options(synchronize_session=False)
    ), "session_invalidate")
    await bounded(db.commit(), "session_commit")
    return result.rowcount or 0


async def list_sessions(db: AsyncSession, account_id: str, limit: int = 50) -> list[models.UserSession]:
    result = await bounded(db.execute(
        select(models.UserSession)
        .where(models.UserSession.account_id == account_id)
        .order_by(models.UserSession.id.desc())
        .limit(limit)
    ), "session_list")
    return list(result.scalars().all())


async def revoke_all(db: AsyncSession, account_id: str, reason: str = ADMIN_REVOKED) -> int:
    result = await bounded(db.execute(
        update(models.UserSession)
        .where(models.UserSession.account_id == account_id)
        .where(models.UserSession.is_active == True)  # noqa: E712
        .values(is_active=False, invalidated_at=datetime.utcnow(), invalidation_reason=reason)
        .execution_options(synchronize_session=False)
    ), "session_revoke_all")
    await bounded(db.commit(), "session_commit")
    revoked = result.rowcount or 0
    if revoked:
        await redis_service.publish_session_event(account_id, "sessions_revoked", revoked=revoked, reason=reason)
        logger.warning("sessions_revoked", extra={"account_id": account_id, "revoked": revoked, "reason": reason})
    return revoked
