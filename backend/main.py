"""
LessonGuard — secure media access for the course marketplace.

Application entry point: wires routers, middleware, error rendering and the
Prometheus endpoint. Business logic lives in the *_service modules.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

import redis_service
from config import CORS_ORIGINS, LOG_LEVEL, validate_secrets
from database import StoreTimeout
from logging_config import get_logger, setup_logging
from rate_limit import limiter
from routers import admin, payments, sessions, video

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL)
    validate_secrets()
    logger.info("startup")
    yield
    await redis_service.close_redis()
    logger.info("shutdown")


app = FastAPI(title="LessonGuard", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Admin-Key"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


# ── Error rendering ────────────────────────────────────────────────────────────
# Every error body is {"error": <message>} plus "reason" where one applies.

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "details": jsonable_errors(exc)},
    )


@app.exception_handler(StoreTimeout)
@app.exception_handler(SQLAlchemyError)
async def store_error(request: Request, exc: Exception):
    logger.error("store_error", extra={
        "path": request.url.path,
        "error_type": type(exc).__name__,
        "error": str(exc)[:500],
    })
    return JSONResponse(status_code=500, content={"error": "Service temporarily unavailable"})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]


# ── Routes ─────────────────────────────────────────────────────────────────────

app.include_router(video.router)
app.include_router(sessions.router)
app.include_router(payments.router)
app.include_router(admin.router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
