"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Multiple instances behind a load balancer (sweeps coordinate via Redis locks)
- Circuit breaker around the notification broker
- Redis-backed rate limiting
- Request ids and timing headers
- Prometheus metrics
"""

import hashlib
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError

import config.redis_client as redis_module
from config.database import close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings

# Service routers
from services.admin.router import router as admin_router
from services.booking.router import router as booking_router
from services.cron.router import router as cron_router
from services.notification.router import router as notification_router
from services.payment.router import router as payment_router
from shared.utils.errors import BookingError
from shared.utils.resilience import circuit_breaker_manager


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


# Configure structured logging
handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    handlers=[handler],
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    # Initialize connections
    await init_db()
    logger.info("Database connected")

    try:
        await init_redis()
        logger.info("Redis connected")
    except Exception as e:
        # Rate limiting, token revocation and sweep locks degrade; requests still flow
        logger.error(f"Redis unavailable, continuing without it: {e}")
        await close_redis()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    # Cleanup
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Performer Booking Platform API

REST API for booking performers with manually reconciled payments:
- **Bookings**: PENDING_DEPOSIT → PENDING_APPROVAL → APPROVED → CONFIRMED → COMPLETED
- **Payments**: PayID / bank transfer receipts, verified by an admin
- **Notifications**: in-app inbox + SMS (Twilio) + email (Resend)
- **Admin**: approval queue, audit log, denylist
- **Cron**: stale-booking sweep, retention, reminders

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.
Cron endpoints take `Authorization: Bearer <CRON_SECRET>`.

### Roles
- `CLIENT`: Create bookings, upload deposit / balance receipts, cancel own bookings
- `PERFORMER`: Confirm or reject approved bookings
- `ADMIN`: Approve bookings, verify payments, manage the denylist
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (outermost first) ───────────────
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]
    )
    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    # GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Redis-backed rate limiter. Skips health, docs, metrics and cron.

        Strategy:
        - Authenticated: RATE_LIMIT_PER_MINUTE per bearer token
        - Unauthenticated: RATE_LIMIT_UNAUTH_PER_MINUTE per IP
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths or request.url.path.startswith("/cron/"):
            return await call_next(request)

        try:
            if redis_module.redis_client:
                cache = RedisCache(redis_module.redis_client)
                auth_header = request.headers.get("Authorization", "")
                if auth_header.startswith("Bearer "):
                    token_hash = hashlib.sha256(auth_header[7:].encode()).hexdigest()[:32]
                    key = f"rate:auth:{token_hash}"
                    limit = settings.RATE_LIMIT_PER_MINUTE
                else:
                    client_ip = request.client.host if request.client else "unknown"
                    key = f"rate:unauth:{client_ip}"
                    limit = settings.RATE_LIMIT_UNAUTH_PER_MINUTE

                if not await cache.check_rate_limit(key, limit):
                    logger.warning(f"Rate limit exceeded for {key}")
                    return JSONResponse(
                        status_code=429,
                        content={"detail": "Rate limit exceeded. Please slow down."},
                        headers={"Retry-After": "60"},
                    )
        except Exception as e:
            # Don't fail requests if Redis is down - fail open
            logger.error(f"Rate limit check failed: {str(e)}")

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        """Typed lifecycle errors → their HTTP status with {"detail", "code"}."""
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error(f"[{request_id}] {exc.code}: {exc.message}")
        else:
            logger.info(f"[{request_id}] {exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Invalid input",
                "code": "VALIDATION_ERROR",
                "details": json.loads(json.dumps(exc.errors(), default=str)),
            },
        )

    @app.exception_handler(CircuitBreakerError)
    async def circuit_open_handler(request: Request, exc: CircuitBreakerError):
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Service degraded - Circuit breaker open: {str(exc)}")
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Service temporarily unavailable. Please try again later.",
                "request_id": request_id,
                "status": "degraded",
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"

        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "detail": detail,
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        # DB check
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        # Redis check (optional dependency)
        try:
            if redis_module.redis_client:
                await redis_module.redis_client.ping()
                checks["redis"] = "ok"
            else:
                checks["redis"] = "disabled"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        checks["circuit_breakers"] = circuit_breaker_manager.status()

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(booking_router)
    app.include_router(payment_router)
    app.include_router(notification_router)
    app.include_router(admin_router)
    app.include_router(cron_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
