"""
Redis fast path for LessonGuard.

Redis is never the source of truth: every answer it gives is either a cache
of something the database already knows, or a negative hint that the
database later confirms.

Key schema
──────────
  lesson:{lesson_id}            STRING  JSON lesson → course context   TTL = LESSON_CACHE_TTL
  session_replaced:{token_hash} STRING  reason code                   TTL = REPLACED_FLAG_TTL_S

Pub/Sub channel
───────────────
  media:sessions   payload: {"account_id": str, "action": "session_replaced", "replaced": int}

Circuit breaker
───────────────
  Opens after FAILURE_THRESHOLD consecutive Redis errors.
  Allows a probe after RECOVERY_TIMEOUT seconds (half-open).
  All public functions degrade gracefully when the circuit is open:
    - cache_get → None (caller falls through to the DB)
    - cache_set / mark_session_replaced → no-op
    - is_session_replaced → False (the DB lookup still runs)
    - publish_session_event → no-op
"""

import json
import os
import time
from logging_config import get_logger
from prometheus_client import Counter
from redis.asyncio import Redis, RedisError

logger = get_logger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REPLACED_FLAG_TTL_S = 7 * 24 * 3600
SESSION_CHANNEL = "media:sessions"

_cache_hits = Counter("media_redis_cache_hits_total", "Redis cache hits")
_cache_misses = Counter("media_redis_cache_misses_total", "Redis cache misses (absent key, circuit open or error)")

# Module-level singleton; replaced with a FakeAsyncRedis instance in tests
_redis: Redis | None = None


# ── Circuit breaker ───────────────────────────────────────────────────────────

class _CircuitBreaker:
    """Three-state circuit breaker (CLOSED → OPEN → HALF-OPEN).

    CLOSED    — normal operation; errors are recorded
    OPEN      — Redis is considered down; callers receive fallback values
    HALF-OPEN — one probe allowed after RECOVERY_TIMEOUT; success closes circuit
    """
    FAILURE_THRESHOLD = 3
    RECOVERY_TIMEOUT  = 60

    def __init__(self) -> None:
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        if time.monotonic() - self._opened_at >= self.RECOVERY_TIMEOUT:
            return False
        return True

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._failures >= self.FAILURE_THRESHOLD and self._opened_at is None:
            self._opened_at = time.monotonic()
            logger.error("redis_circuit_opened", extra={
                "failures": self._failures,
                "recovery_in_s": self.RECOVERY_TIMEOUT,
            })


_circuit = _CircuitBreaker()


# ── Connection management ─────────────────────────────────────────────────────

async def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _replaced_key(token_hash: str) -> str:
    return f"session_replaced:{token_hash}"


# ── Generic key-value cache ────────────────────────────────────────────────────

async def cache_set(key: str, value: dict, ttl: int) -> None:
    """Store a dict in Redis as JSON with a TTL.  No-op when circuit is open."""
    if _circuit.is_open:
        return
    try:
        r = await get_redis()
        await r.set(key, json.dumps(value), ex=ttl)
        _circuit.record_success()
    except (RedisError, OSError) as exc:
        _circuit.record_failure()
        logger.error("redis_error", extra={"op": "cache_set", "key": key, "error": str(exc)})


async def cache_get(key: str) -> dict | None:
    """Return a cached dict or None on miss / circuit-open / error."""
    if _circuit.is_open:
        _cache_misses.inc()
        return None
    try:
        r = await get_redis()
        raw = await r.get(key)
        _circuit.record_success()
    except (RedisError, OSError) as exc:
        _circuit.record_failure()
        _cache_misses.inc()
        logger.error("redis_error", extra={"op": "cache_get", "key": key, "error": str(exc)})
        return None
    if raw:
        _cache_hits.inc()
        return json.loads(raw)
    _cache_misses.inc()
    return None


# ── Session flags ─────────────────────────────────────────────────────────────

async def mark_session_replaced(token_hashes: list[str], reason: str = "SESSION_REPLACED") -> None:
    """Flag superseded session tokens so the next validate() can short-circuit.

    Fire-and-forget: the rows are already inactive in the DB, the flag only
    saves a round-trip.
    """
    if not token_hashes:
        return
    if _circuit.is_open:
        logger.warning("redis_circuit_open_skip", extra={"op": "mark_session_replaced"})
        return
    try:
        r = await get_redis()
        async with r.pipeline(transaction=True) as pipe:
            for h in token_hashes:
                pipe.setex(_replaced_key(h), REPLACED_FLAG_TTL_S, reason)
            await pipe.execute()
        _circuit.record_success()
    except (RedisError, OSError) as exc:
        _circuit.record_failure()
        logger.error("redis_error", extra={"op": "mark_session_replaced", "error": str(exc)})


async def is_session_replaced(token_hash: str) -> bool:
    """O(1) negative hint. False when the circuit is open or Redis errors;
    the caller then asks the DB, which gives the same answer more slowly.
    """
    if _circuit.is_open:
        return False
    try:
        r = await get_redis()
        result = await r.exists(_replaced_key(token_hash)) > 0
        _circuit.record_success()
        return result
    except (RedisError, OSError) as exc:
        _circuit.record_failure()
        logger.error("redis_error", extra={"op": "is_session_replaced", "error": str(exc)})
        return False


async def publish_session_event(account_id: str, action: str, **fields) -> None:
    """Notify other instances (and any open player) that a session changed."""
    if _circuit.is_open:
        return
    try:
        r = await get_redis()
        await r.publish(SESSION_CHANNEL, json.dumps({
            "account_id": account_id,
            "action": action,
            **fields,
        }))
        _circuit.record_success()
    except (RedisError, OSError) as exc:
        _circuit.record_failure()
        logger.error("redis_error", extra={"op": "publish_session_event", "error": str(exc)})
