"""
Central configuration — all env-vars and tunable constants live here.
Import from this module instead of calling os.getenv() scattered across the codebase.

REQUIRED secrets (the app refuses to start without them — see validate_secrets()):
  AUTH_JWT_SECRET         — HS256 secret of the identity provider's access tokens (≥ 32 bytes)
  BUNNY_STREAM_LIBRARY_ID — upstream video library identifier
  BUNNY_STREAM_TOKEN_KEY  — CDN / embed token authentication key (or BUNNY_STREAM_API_KEY)
  DODO_WEBHOOK_SECRET     — shared secret for payment webhooks (unless WEBHOOK_PERMISSIVE_MODE)
  ADMIN_API_KEY           — key for /admin/* endpoints
"""
import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── Identity provider ─────────────────────────────────────────────────────────
# Access tokens are HS256 JWTs minted by the identity provider; `sub` is the account id.
AUTH_JWT_SECRET   = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")

ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

# ── Upstream media host (Bunny Stream) ────────────────────────────────────────
BUNNY_STREAM_LIBRARY_ID = os.getenv("BUNNY_STREAM_LIBRARY_ID", "")
BUNNY_STREAM_API_KEY    = os.getenv("BUNNY_STREAM_API_KEY", "")
# The token authentication key falls back to the API key, as the provider allows.
BUNNY_STREAM_TOKEN_KEY  = os.getenv("BUNNY_STREAM_TOKEN_KEY", "") or BUNNY_STREAM_API_KEY
BUNNY_STREAM_HOSTNAME   = (
    os.getenv("BUNNY_STREAM_HOSTNAME", "")
    or (f"vz-{BUNNY_STREAM_LIBRARY_ID}.b-cdn.net" if BUNNY_STREAM_LIBRARY_ID else "")
)
BUNNY_EMBED_HOST        = os.getenv("BUNNY_EMBED_HOST", "iframe.mediadelivery.net")

# Lifetime of every signed playback / embed URL (seconds). 4 hours.
TOKEN_EXPIRATION_SECONDS = int(os.getenv("TOKEN_EXPIRATION_SECONDS", str(4 * 3600)))

# ── Payment webhooks ──────────────────────────────────────────────────────────
DODO_WEBHOOK_SECRET = os.getenv("DODO_WEBHOOK_SECRET", "")
# Development-only escape hatch: log and continue on a bad or missing signature.
# Never enable in production.
WEBHOOK_PERMISSIVE_MODE = _flag("WEBHOOK_PERMISSIVE_MODE", "false")

# ── Session guard ─────────────────────────────────────────────────────────────
ENFORCE_SINGLE_SESSION = _flag("ENFORCE_SINGLE_SESSION", "true")
SESSION_ENFORCE_DEVICE = _flag("SESSION_ENFORCE_DEVICE", "true")
SESSION_IDLE_HOURS     = int(os.getenv("SESSION_IDLE_HOURS", "0"))   # 0 = sessions never idle out

# ── Store access ──────────────────────────────────────────────────────────────
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "8"))
LESSON_CACHE_TTL      = 300   # seconds a resolved lesson → course mapping is cached

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def validate_secrets() -> None:
    """Fail fast at startup if any required secret is missing or too short.

    Called from the FastAPI lifespan handler so the process exits immediately
    with a clear error message. A missing signing key is a configuration error,
    not something the request path should ever try to recover from.
    """
    errors: list[str] = []
    _required = {
        "AUTH_JWT_SECRET":         (AUTH_JWT_SECRET,         32),
        "ADMIN_API_KEY":           (ADMIN_API_KEY,           16),
        "BUNNY_STREAM_LIBRARY_ID": (BUNNY_STREAM_LIBRARY_ID,  1),
        "BUNNY_STREAM_TOKEN_KEY":  (BUNNY_STREAM_TOKEN_KEY,   8),
    }
    if not WEBHOOK_PERMISSIVE_MODE:
        _required["DODO_WEBHOOK_SECRET"] = (DODO_WEBHOOK_SECRET, 8)
    for name, (value, min_len) in _required.items():
        if not value:
            errors.append(f"  {name} is not set")
        elif len(value) < min_len:
            errors.append(f"  {name} is too short ({len(value)} chars, minimum {min_len})")
    if errors:
        raise RuntimeError(
            "LessonGuard startup aborted — insecure configuration:\n"
            + "\n".join(errors)
            + "\n\nSet the missing environment variables and restart."
        )


# ── CORS ──────────────────────────────────────────────────────────────────────
CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]
