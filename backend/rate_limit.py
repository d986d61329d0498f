"""
Rate limiting — shared Limiter instance used across all routers.

In production  (RATE_LIMIT_ENABLED=true, the default):
  /video-url            60 req/min  per IP
  /video-events         120 req/min per IP  (players report several events per view)
  /sessions*            30 req/min  per IP
  /admin/* writes       200 req/min per IP  (admin key already guards the route)

The payment webhook has no limit; the provider retries every delivery it
considers failed.

In test / development (RATE_LIMIT_ENABLED=false):
  All limits are raised to 100 000/minute — effectively disabled.
  Set in conftest.py via os.environ.setdefault("RATE_LIMIT_ENABLED", "false").
"""
import os
from slowapi import Limiter
from slowapi.util import get_remote_address

# Read once at import time; conftest.py sets it before main is imported.
_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false"

limiter = Limiter(key_func=get_remote_address)


def _limit(real: str) -> str:
    """Return the real limit in production, or an effectively-unlimited value in test mode."""
    return real if _ENABLED else "100000/minute"


VIDEO_URL_LIMIT    = _limit("60/minute")
VIDEO_EVENT_LIMIT  = _limit("120/minute")
SESSION_LIMIT      = _limit("30/minute")
ADMIN_WRITE_LIMIT  = _limit("200/minute")
