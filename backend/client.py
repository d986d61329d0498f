"""
Async client for the LessonGuard API, used by player front-ends and tooling.

The device id is held by the caller (see device_identity.DeviceIdentity) and
sent explicitly with every call. Failures map onto three exceptions, one per
corrective action the user can take:

  PlaybackDenied          enroll (or pick another lesson)
  SessionEnded            sign in again
  TemporarilyUnavailable  retry later
"""
from typing import Optional

import httpx

from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0

DENIAL_MESSAGES = {
    "NOT_ENROLLED": "You are not enrolled in this course. Enroll to watch this lesson.",
    "NOT_FOUND": "This lesson is not available.",
}
UNAVAILABLE_MESSAGE = "Video is temporarily unavailable. Please try again in a moment."
SESSION_ENDED_MESSAGE = "Your session has ended. Please sign in again."


class MediaAccessError(Exception):
    def __init__(self, message: str, reason: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.status_code = status_code


class PlaybackDenied(MediaAccessError):
    """403 / 404: the account may not watch this lesson."""


class SessionEnded(MediaAccessError):
    """401: credential invalid, or this sign-in was replaced elsewhere."""


class TemporarilyUnavailable(MediaAccessError):
    """5xx, timeout or transport failure; safe to retry with backoff."""


class MediaAccessClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        device_id: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.device_id = device_id
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {access_token}"}

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "MediaAccessClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _post(self, path: str, body: Optional[dict] = None) -> httpx.Response:
        try:
            return await self._http.post(path, json=body or {}, headers=self._headers)
        except httpx.HTTPError as exc:
            logger.warning("media_api_unreachable", extra={"path": path, "error": str(exc)})
            raise TemporarilyUnavailable(UNAVAILABLE_MESSAGE) from exc

    @staticmethod
    def _raise_for(res: httpx.Response) -> None:
        if res.is_success:
            return
        try:
            body = res.json()
        except ValueError:
            body = {}
        reason = body.get("reason") if isinstance(body, dict) else None
        if res.status_code == 401:
            message = body.get("error") if reason and isinstance(body, dict) else None
            raise SessionEnded(message or SESSION_ENDED_MESSAGE, reason or "UNAUTHENTICATED", 401)
        if res.status_code in (403, 404):
            reason = reason or ("NOT_FOUND" if res.status_code == 404 else "NOT_ENROLLED")
            raise PlaybackDenied(DENIAL_MESSAGES.get(reason, DENIAL_MESSAGES["NOT_ENROLLED"]), reason, res.status_code)
        if res.status_code == 429 or res.status_code >= 500:
            raise TemporarilyUnavailable(UNAVAILABLE_MESSAGE, status_code=res.status_code)
        raise MediaAccessError(f"Unexpected response {res.status_code}", status_code=res.status_code)

    async def start_session(self) -> dict:
        res = await self._post("/sessions", {"device_id": self.device_id})
        self._raise_for(res)
        return res.json()

    async def validate_session(self) -> dict:
        res = await self._post("/sessions/validate", {"device_id": self.device_id})
        self._raise_for(res)
        return res.json()

    async def request_playback(self, video_id: str, lesson_id: str) -> dict:
        res = await self._post("/video-url", {
            "video_id": video_id,
            "lesson_id": lesson_id,
            "device_id": self.device_id,
        })
        self._raise_for(res)
        return res.json()

    async def report_event(self, event_type: str, lesson_id: Optional[str] = None, **details) -> bool:
        """Best-effort telemetry: returns False instead of raising."""
        try:
            res = await self._post("/video-events", {
                "event_type": event_type,
                "lesson_id": lesson_id,
                "device_id": self.device_id,
                "details": details,
            })
        except TemporarilyUnavailable:
            return False
        if not res.is_success:
            logger.warning("media_event_rejected", extra={"event_type": event_type, "status": res.status_code})
            return False
        return True

    async def sign_out(self) -> bool:
        """Ends the server-side session. A session that already ended is still a success."""
        res = await self._post("/sessions/signout")
        if res.status_code == 401:
            return True
        self._raise_for(res)
        return True
