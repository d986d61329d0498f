"""
Pydantic schemas for LessonGuard API request/response validation.

Using explicit schemas gives us:
  - Auto-generated, accurate OpenAPI docs
  - Response filtering (no accidental field leakage; token hashes never leave the service)
  - Input validation with clear error messages
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from event_log import EVENT_KINDS


# ── Playback ──────────────────────────────────────────────────────────────────

class VideoURLRequest(BaseModel):
    video_id: str = Field(..., min_length=1, max_length=128, description="Upstream video GUID")
    lesson_id: str = Field(..., min_length=1, max_length=128)
    device_id: Optional[str] = Field(default=None, max_length=64, description="Client-held device identifier")


class VideoURLResponse(BaseModel):
    playback_url: str
    playback_url_720p: str
    playback_url_480p: str
    embed_url: str
    expires_at: str
    watermark_code: str
    tracking_code: str
    valid_for_seconds: int
    success: bool = True


class VideoEventRequest(BaseModel):
    event_type: str = Field(..., max_length=64)
    lesson_id: Optional[str] = Field(default=None, max_length=128)
    device_id: Optional[str] = Field(default=None, max_length=64)
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type")
    @classmethod
    def _known_kind(cls, v: str) -> str:
        if v not in EVENT_KINDS:
            raise ValueError(f"unknown event type: {v}")
        return v


# ── Sessions ──────────────────────────────────────────────────────────────────

class SessionCreateRequest(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=64)


class SessionValidateRequest(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=64)


class SessionCreatedResponse(BaseModel):
    success: bool = True
    session_id: int
    is_new: bool
    replaced_count: int


class SessionValidationResponse(BaseModel):
    is_valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    session_id: Optional[int] = None


class SessionOut(BaseModel):
    id: int
    account_id: str
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    is_active: bool
    invalidated_at: Optional[datetime] = None
    invalidation_reason: Optional[str] = None
    replaced_by_id: Optional[int] = None

    model_config = {"from_attributes": True}


# ── Audit ─────────────────────────────────────────────────────────────────────

class AuditLogOut(BaseModel):
    id: int
    timestamp: Optional[datetime] = None
    user_id: Optional[str] = None
    event_type: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    tracking_code: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[str] = None

    model_config = {"from_attributes": True}


class WebhookEventOut(BaseModel):
    id: str
    event_type: str
    payment_id: Optional[str] = None
    status: Optional[str] = None
    signature_valid: Optional[bool] = None
    attempts: Optional[int] = None
    error: Optional[str] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
