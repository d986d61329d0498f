"""
Playback grants: short-lived signed URLs for one video, stamped with a
viewer-specific watermark and a per-grant tracking code.

A grant is never stored. The CDN verifies each URL on its own; the audit
log keeps the tracking code so a leaked recording can be traced back.
"""
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from prometheus_client import Counter

import config
import event_log
from logging_config import get_logger
from token_signer import sign_path, sign_embed_token
from watermark_service import generate_watermark_code, generate_tracking_code

logger = get_logger(__name__)

# Response field → rendition path under /<video_id>/
RENDITIONS = (
    ("playback_url",      "playlist.m3u8"),
    ("playback_url_720p", "play_720p.mp4"),
    ("playback_url_480p", "play_480p.mp4"),
)

playback_requests = Counter(
    "media_playback_requests_total",
    "POST /video-url outcomes",
    ["outcome"],
)


@dataclass(frozen=True)
class PlaybackGrant:
    playback_url: str
    playback_url_720p: str
    playback_url_480p: str
    embed_url: str
    expires_at: int
    watermark_code: str
    tracking_code: str
    valid_for_seconds: int

    @property
    def expires_at_iso(self) -> str:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")

    def as_response(self) -> dict:
        body = asdict(self)
        body["expires_at"] = self.expires_at_iso
        body["success"] = True
        return body


def mint_playback(
    account_id: str,
    video_id: str,
    device_id: Optional[str] = None,
    now: Optional[int] = None,
) -> PlaybackGrant:
    """Sign every rendition and the embed URL with one shared expiry."""
    lifetime = config.TOKEN_EXPIRATION_SECONDS
    expires_at = (int(time.time()) if now is None else now) + lifetime

    urls = {
        field: sign_path(
            f"/{video_id}/{rendition}",
            config.BUNNY_STREAM_HOSTNAME,
            config.BUNNY_STREAM_TOKEN_KEY,
            expires_at,
            subject_id=account_id,
        )
        for field, rendition in RENDITIONS
    }
    embed_url = sign_embed_token(
        config.BUNNY_STREAM_LIBRARY_ID,
        video_id,
        config.BUNNY_STREAM_TOKEN_KEY,
        expires_at,
        embed_host=config.BUNNY_EMBED_HOST,
    )
    watermark = generate_watermark_code(account_id, device_id)
    return PlaybackGrant(
        embed_url=embed_url,
        expires_at=expires_at,
        watermark_code=watermark,
        tracking_code=generate_tracking_code(watermark),
        valid_for_seconds=lifetime,
        **urls,
    )


async def record_access(
    grant: PlaybackGrant,
    *,
    account_id: str,
    lesson_id: str,
    video_id: str,
    device_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> None:
    """Telemetry + forensic audit row for one grant. Runs after the response."""
    await event_log.record(
        "VIDEO_TOKEN_GENERATED",
        account_id=account_id,
        lesson_id=lesson_id,
        device_id=device_id or "unknown",
        details={"video_id": video_id, "tracking_code": grant.tracking_code},
    )
    await event_log.audit(
        "VIDEO_ACCESS",
        user_id=account_id,
        resource_type="lesson",
        resource_id=lesson_id,
        tracking_code=grant.tracking_code,
        ip_address=ip_address,
        user_agent=user_agent,
        details={
            "video_id": video_id,
            "device_id": device_id or "unknown",
            "tracking_code": grant.tracking_code,
            "watermark_code": grant.watermark_code,
            "expires_at": grant.expires_at_iso,
        },
    )
