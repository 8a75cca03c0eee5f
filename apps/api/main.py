"""
FastAPI application for the progressive dinner matching service.

Routers:
    matching   - run matching, read the active plan, apply cascades
    placement  - organizer repairs (dropouts, promotions, address changes)
    envelopes  - reveal schedule maintenance (delays, distance refinement)
"""
import logging
import re
import time

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.database import check_db_connection
from core.exceptions import APIException
from core.logging import setup_logging
from routers import envelopes, matching, placement

setup_logging()
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
LOCAL_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]
EVENT_PATH = re.compile(r"^/v1/events/([^/]+)")

app = FastAPI(
    title="Progressive Dinner Matching API",
    description="Host/guest matching, cascade repair and envelope reveal timing for progressive dinner events",
    version=API_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)


def _cors_origins():
    if settings.DEBUG:
        return ["*"]
    if settings.CORS_ORIGINS:
        return [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    return LOCAL_ORIGINS


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _event_id(path: str):
    match = EVENT_PATH.match(path)
    return match.group(1) if match else None


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One log line per request, tagged with the acting organizer and event."""
    started = time.perf_counter()
    context = {
        "method": request.method,
        "path": request.url.path,
        "actor": request.headers.get("X-Actor"),
        "event_id": _event_id(request.url.path),
    }
    try:
        response = await call_next(request)
    except Exception:
        logger.exception(f"{request.method} {request.url.path} crashed", extra={"extra_fields": context})
        raise

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    context.update(status_code=response.status_code, duration_ms=elapsed_ms)
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms} ms)",
        extra={"extra_fields": context},
    )
    response.headers["X-Process-Time"] = str(elapsed_ms / 1000)
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    """Render API errors with their machine-readable code."""
    if exc.status_code >= 500:
        logger.error(f"API error {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}",
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def _timed(check):
    started = time.perf_counter()
    result = check()
    return result, round((time.perf_counter() - started) * 1000, 2)


def _redis_status():
    from core.cache import get_redis_client

    try:
        client = get_redis_client()
        if client is None:
            return "unavailable"
        client.ping()
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return "error"
    return "healthy"


@app.get("/health")
async def health():
    """Liveness for load balancers: 200 while the database answers, else 503."""
    if not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    return {"status": "healthy", "timestamp": time.time()}


@app.get("/health/detailed")
async def health_detailed():
    """
    Per-dependency status. Always 200.

    Redis only backs the routing cache, so losing it degrades the service
    instead of failing it: lookups fall through to the provider.
    """
    db_ok, db_ms = _timed(check_db_connection)
    redis_state, redis_ms = _timed(_redis_status)

    if not db_ok:
        overall = "unhealthy"
    elif redis_state != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
        "timestamp": time.time(),
        "checks": {
            "database": {"status": "healthy" if db_ok else "unhealthy", "latency_ms": db_ms},
            "redis": {"status": redis_state, "latency_ms": redis_ms},
        },
    }


app.include_router(matching.router)
app.include_router(placement.router)
app.include_router(envelopes.router)
