import uuid
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index, UniqueConstraint, text,
)
from datetime import datetime
from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Catalogue (owned by the course marketplace; read-only for this service) ──

class Course(Base):
    __tablename__ = "courses"

    id         = Column(String, primary_key=True, default=_uuid)
    owner_id   = Column(String, nullable=False, index=True)   # creator account id
    title      = Column(String, nullable=False)
    status     = Column(String, default="published")
    created_at = Column(DateTime, default=datetime.utcnow)


class CourseModule(Base):
    __tablename__ = "modules"

    id        = Column(String, primary_key=True, default=_uuid)
    course_id = Column(String, ForeignKey("courses.id"), nullable=False, index=True)
    title     = Column(String, nullable=False)
    position  = Column(Integer, default=0)


class Lesson(Base):
    __tablename__ = "lessons"

    id        = Column(String, primary_key=True, default=_uuid)
    module_id = Column(String, ForeignKey("modules.id"), nullable=False, index=True)
    title     = Column(String, nullable=False)
    video_id  = Column(String, nullable=True)   # upstream video GUID; NULL = not uploaded yet


# ── Enrollment & payments ─────────────────────────────────────────────────────

class Enrollment(Base):
    """A student's access record for a course.

    The payment webhook is the only writer in this service, and it only ever
    moves a row toward "approved". (student_id, course_id) is unique so two
    concurrent deliveries cannot create two rows.
    """
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="uq_enrollment_student_course"),
    )

    id          = Column(String, primary_key=True, default=_uuid)
    student_id  = Column(String, nullable=False, index=True)
    course_id   = Column(String, ForeignKey("courses.id"), nullable=False, index=True)
    status      = Column(String, nullable=False, default="pending")  # pending | approved | rejected
    created_at  = Column(DateTime, default=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)


class PaymentProof(Base):
    __tablename__ = "payment_proofs"

    id             = Column(Integer, primary_key=True, index=True)
    enrollment_id  = Column(String, ForeignKey("enrollments.id"), nullable=False, index=True)
    payment_method = Column(String, nullable=False, default="dodo")
    payment_id     = Column(String, unique=True, nullable=True)   # provider payment id; one proof per payment
    text_proof     = Column(String)
    notes          = Column(Text, nullable=True)
    created_at     = Column(DateTime, default=datetime.utcnow)


class PaymentWebhookEvent(Base):
    """Ledger of verified payment webhook deliveries.

    Keyed by the provider's webhook-id header (or sha256 of the raw body when
    the header is absent) so that:
    - duplicate deliveries are detected before any state transition,
    - failed deliveries can be inspected and retried via the admin API.
    """
    __tablename__ = "payment_webhook_events"

    id              = Column(String, primary_key=True)
    event_type      = Column(String, nullable=False)
    payment_id      = Column(String, nullable=True, index=True)
    payload         = Column(Text, nullable=False)            # raw JSON body as received
    signature_valid = Column(Boolean, default=False)
    status          = Column(String, default="pending")      # pending | processing | processed | failed
    error           = Column(Text, nullable=True)            # last error (truncated to 1 000 chars)
    attempts        = Column(Integer, default=0)
    received_at     = Column(DateTime, default=datetime.utcnow)
    processed_at    = Column(DateTime, nullable=True)


# ── Sessions ──────────────────────────────────────────────────────────────────

class UserSession(Base):
    """One sign-in of one account on one device.

    The bearer token itself is never stored, only its sha256. The partial
    unique index allows at most one active row per account.
    """
    __tablename__ = "user_sessions"
    __table_args__ = (
        Index(
            "uq_user_sessions_one_active",
            "account_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active = true"),
        ),
    )

    id                  = Column(Integer, primary_key=True, index=True)
    account_id          = Column(String, nullable=False, index=True)
    token_hash          = Column(String, nullable=False, unique=True, index=True)
    device_id           = Column(String, nullable=True)
    user_agent          = Column(String, nullable=True)
    ip_address          = Column(String, nullable=True)
    created_at          = Column(DateTime, default=datetime.utcnow)
    last_seen_at        = Column(DateTime, default=datetime.utcnow)
    is_active           = Column(Boolean, nullable=False, default=True)
    invalidated_at      = Column(DateTime, nullable=True)
    invalidation_reason = Column(String, nullable=True)   # SESSION_REPLACED | LOGGED_OUT | EXPIRED | DEVICE_MISMATCH | ADMIN_REVOKED
    replaced_by_id      = Column(Integer, nullable=True)


# ── Telemetry & audit ─────────────────────────────────────────────────────────

class VideoEvent(Base):
    __tablename__ = "video_events"

    id         = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    student_id = Column(String, nullable=True, index=True)
    lesson_id  = Column(String, nullable=True, index=True)
    device_id  = Column(String, nullable=True)
    event_type = Column(String, nullable=False, index=True)
    event_data = Column(Text, nullable=True)   # JSON object


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id            = Column(Integer, primary_key=True, index=True)
    timestamp     = Column(DateTime, default=datetime.utcnow, index=True)
    user_id       = Column(String, nullable=True, index=True)
    event_type    = Column(String, nullable=False, index=True)   # VIDEO_ACCESS | SECURITY_ALERT | PAYMENT_*
    resource_type = Column(String, nullable=True)
    resource_id   = Column(String, nullable=True)
    tracking_code = Column(String, nullable=True, index=True)    # set on VIDEO_ACCESS rows
    ip_address    = Column(String, nullable=True)
    user_agent    = Column(String, nullable=True)
    details       = Column(Text, nullable=True)                  # JSON object
