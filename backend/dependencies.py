"""
Shared FastAPI dependencies and utility functions used across all routers.
"""
import hmac as _hmac
from dataclasses import dataclass

from fastapi import HTTPException, Header, Request

from database import SessionLocal
from auth_utils import Identity, InvalidCredentials, verify_access_token
from config import ADMIN_API_KEY


# ── Database ───────────────────────────────────────────────────────────────────

async def get_db():
    async with SessionLocal() as session:
        yield session


# ── Auth dependencies ──────────────────────────────────────────────────────────

async def require_admin(x_admin_key: str = Header(default="")):
    """FastAPI dependency: verifies X-Admin-Key header via timing-safe comparison."""
    if not ADMIN_API_KEY or not _hmac.compare_digest(x_admin_key, ADMIN_API_KEY):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized: invalid or missing X-Admin-Key",
        )


async def get_current_identity(authorization: str = Header(default="")) -> Identity:
    """FastAPI dependency: ``Authorization: Bearer <access-token>`` → Identity."""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        return verify_access_token(token.strip())
    except InvalidCredentials:
        raise HTTPException(status_code=401, detail="Invalid or expired access token")


# ── Request metadata ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ClientMeta:
    ip_address: str
    user_agent: str


def client_meta(request: Request) -> ClientMeta:
    """Caller IP as seen behind the CDN / proxy, plus the user agent."""
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = (
        forwarded.split(",")[0].strip()
        or request.headers.get("cf-connecting-ip", "").strip()
        or (request.client.host if request.client else "")
        or "unknown"
    )
    return ClientMeta(ip_address=ip, user_agent=request.headers.get("user-agent", "unknown"))
