"""
Lesson access decisions.

A caller may watch a lesson's video when they own the course the lesson
belongs to, or hold an approved enrollment in it. Nothing else grants access:
not a pending enrollment, not a previously issued URL, not a device id.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

import models
import redis_service
from config import LESSON_CACHE_TTL
from database import bounded
from logging_config import get_logger

logger = get_logger(__name__)

OWNER = "OWNER"
ENROLLED = "ENROLLED"
NOT_FOUND = "NOT_FOUND"
NOT_ENROLLED = "NOT_ENROLLED"


@dataclass(frozen=True)
class AccessDecision:
    eligible: bool
    reason: str
    course_id: Optional[str] = None
    is_owner: bool = False


def _lesson_key(lesson_id: str) -> str:
    return f"lesson:{lesson_id}"


async def resolve_lesson(db: AsyncSession, lesson_id: str) -> dict | None:
    """lesson → module → course, cached for LESSON_CACHE_TTL seconds.

    Only the static structure is cached. Enrollment state is always read
    from the DB so an approval is visible on the very next request.
    """
    key = _lesson_key(lesson_id)
    cached = await redis_service.cache_get(key)
    if cached:
        return cached

    result = await bounded(db.execute(
        select(models.Lesson.id, models.Lesson.video_id, models.Course.id, models.Course.owner_id)
        .join(models.CourseModule, models.CourseModule.id == models.Lesson.module_id)
        .join(models.Course, models.Course.id == models.CourseModule.course_id)
        .where(models.Lesson.id == lesson_id)
    ), "resolve_lesson")
    row = result.first()
    if row is None:
        return None

    context = {
        "lesson_id": row[0],
        "video_id": row[1],
        "course_id": row[2],
        "owner_id": row[3],
    }
    await redis_service.cache_set(key, context, ttl=LESSON_CACHE_TTL)
    return context


async def has_approved_enrollment(db: AsyncSession, account_id: str, course_id: str) -> bool:
    result = await bounded(db.execute(
        select(models.Enrollment.id)
        .where(models.Enrollment.student_id == account_id)
        .where(models.Enrollment.course_id == course_id)
        .where(models.Enrollment.status == "approved")
    ), "enrollment_lookup")
    return result.first() is not None


async def authorize(
    db: AsyncSession,
    account_id: str,
    lesson_id: str,
    video_id: Optional[str] = None,
) -> AccessDecision:
    context = await resolve_lesson(db, lesson_id)
    if context is None:
        return AccessDecision(False, NOT_FOUND)

    # A lesson only unlocks its own video; a lesson with no video unlocks none.
    recorded = context.get("video_id")
    if video_id and recorded != video_id:
        logger.warning("video_lesson_mismatch", extra={
            "account_id": account_id, "lesson_id": lesson_id, "video_id": video_id,
        })
        return AccessDecision(False, NOT_FOUND, course_id=context["course_id"])

    course_id = context["course_id"]
    if context["owner_id"] == account_id:
        return AccessDecision(True, OWNER, course_id=course_id, is_owner=True)

    if await has_approved_enrollment(db, account_id, course_id):
        return AccessDecision(True, ENROLLED, course_id=course_id)
    return AccessDecision(False, NOT_ENROLLED, course_id=course_id)
