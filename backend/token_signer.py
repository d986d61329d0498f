"""
Signed URL and embed-token construction for the upstream media host.

Both constructions are wire contracts with the provider's verifier. The
exact byte order below must not change; any deviation invalidates every
issued URL.

CDN path signing
────────────────
  signable  = path + "?" + "&".join(params)        params in this exact order:
                token_expires=<epoch>
                [token_user_id=<subject[:8]>]
                [token_countries=<csv>]
  signature = base64url_nopad(HMAC_SHA256(token_key, signable))
  url       = https://<cdn_host><path>?<params>&token_signature=<signature>

Embed view tokens
─────────────────
  token = hex(SHA256(token_key + video_id + str(expires)))   plain SHA-256, no separator, no library id
  url   = https://<embed_host>/embed/<library_id>/<video_id>?token=<token>&expires=<expires>&<display flags>
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlsplit

DEFAULT_EMBED_HOST = "iframe.mediadelivery.net"

# Player display flags appended after the signed part of the embed URL.
EMBED_DISPLAY_FLAGS = "autoplay=false&loop=false&muted=false&preload=true&responsive=true"

SUBJECT_PREFIX_LEN = 8


class MissingTokenKeyError(RuntimeError):
    """Raised when no signing key is configured. A deployment error, not a request error."""


@dataclass(frozen=True)
class Verification:
    valid: bool
    reason: str            # OK | MALFORMED | BAD_SIGNATURE | EXPIRED
    expires_at: Optional[int] = None


def _require_key(token_key: str) -> bytes:
    if not token_key:
        raise MissingTokenKeyError("token authentication key is not configured")
    return token_key.encode("utf-8")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _signature(key: bytes, signable: str) -> str:
    return _b64url(hmac.new(key, signable.encode("utf-8"), hashlib.sha256).digest())


def _token_params(
    expires_at: int,
    subject_id: Optional[str] = None,
    countries: Optional[Iterable[str]] = None,
) -> list[str]:
    params = [f"token_expires={int(expires_at)}"]
    if subject_id:
        params.append(f"token_user_id={subject_id[:SUBJECT_PREFIX_LEN]}")
    if countries:
        codes = [c.strip().upper() for c in countries if c and c.strip()]
        if codes:
            params.append(f"token_countries={','.join(codes)}")
    return params


def sign_path(
    path: str,
    cdn_host: str,
    token_key: str,
    expires_at: int,
    subject_id: Optional[str] = None,
    countries: Optional[Iterable[str]] = None,
) -> str:
    """Return the fully signed CDN URL for *path*.

    Deterministic: identical inputs always yield the identical URL, which is
    what lets the CDN verify it independently.
    """
    key = _require_key(token_key)
    params = _token_params(expires_at, subject_id, countries)
    signable = f"{path}?{'&'.join(params)}"
    params.append(f"token_signature={_signature(key, signable)}")
    return f"https://{cdn_host}{path}?{'&'.join(params)}"


def embed_token_hash(token_key: str, video_id: str, expires_at: int) -> str:
    """The raw embed token: hex SHA-256 over key + video id + expiry."""
    key = _require_key(token_key)
    return hashlib.sha256(key + f"{video_id}{int(expires_at)}".encode("utf-8")).hexdigest()


def sign_embed_token(
    library_id: str,
    video_id: str,
    token_key: str,
    expires_at: int,
    embed_host: str = DEFAULT_EMBED_HOST,
) -> str:
    """Return the signed iframe embed URL for *video_id*."""
    token = embed_token_hash(token_key, video_id, expires_at)
    return (
        f"https://{embed_host}/embed/{library_id}/{video_id}"
        f"?token={token}&expires={int(expires_at)}&{EMBED_DISPLAY_FLAGS}"
    )


# ── Verification (mirrors the upstream verifier) ───────────────────────────────

def verify_signed_url(url: str, token_key: str, now: Optional[float] = None) -> Verification:
    """Re-check a URL produced by sign_path().

    The signature is recomputed over the query parameters in the order they
    were received (minus token_signature), compared in constant time, and
    only then is expiry checked, so an expired URL with a valid signature is
    reported as EXPIRED rather than BAD_SIGNATURE.
    """
    key = _require_key(token_key)
    parts = urlsplit(url)
    if not parts.path or not parts.query:
        return Verification(False, "MALFORMED")

    params: list[str] = []
    signature = None
    expires_raw = None
    for pair in parts.query.split("&"):
        name, _, value = pair.partition("=")
        if name == "token_signature":
            signature = value
            continue
        if name == "token_expires":
            expires_raw = value
        params.append(pair)

    if signature is None or expires_raw is None:
        return Verification(False, "MALFORMED")
    try:
        expires_at = int(expires_raw)
    except ValueError:
        return Verification(False, "MALFORMED")

    expected = _signature(key, f"{parts.path}?{'&'.join(params)}")
    if not hmac.compare_digest(expected, signature):
        return Verification(False, "BAD_SIGNATURE", expires_at)

    current = time.time() if now is None else now
    if expires_at < current:
        return Verification(False, "EXPIRED", expires_at)
    return Verification(True, "OK", expires_at)


def verify_embed_token(
    token: str,
    token_key: str,
    video_id: str,
    expires_at: int,
    now: Optional[float] = None,
) -> Verification:
    expected = embed_token_hash(token_key, video_id, expires_at)
    if not hmac.compare_digest(expected, token):
        return Verification(False, "BAD_SIGNATURE", int(expires_at))
    current = time.time() if now is None else now
    if int(expires_at) < current:
        return Verification(False, "EXPIRED", int(expires_at))
    return Verification(True, "OK", int(expires_at))
