"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Features:
- Structured JSON logging
- Request ID + processing time headers
- Redis-backed rate limiting for anonymous traffic (fails open)
- Database connect with exponential backoff
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.database import AsyncSessionLocal, check_db, close_db, init_db
from config.redis_client import RedisCache, close_redis, get_redis, init_redis
from config.settings import settings

# Service routers
from services.auth.router import router as auth_router
from services.provider.router import router as provider_router
from services.booking.router import router as booking_router
from services.emergency.router import router as emergency_router
from services.wallet.router import router as wallet_router
from services.video.router import router as video_router
from services.estimator.router import router as estimator_router
from services.community.router import router as community_router
from services.admin.router import router as admin_router
from shared.utils.geo import rebuild_geo_index


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
    logger.info(f"Starting {settings.APP_NAME} ({settings.APP_ENV})")

    await init_db()
    await init_redis()
    logger.info("Redis connected")

    async with AsyncSessionLocal() as db:
        await rebuild_geo_index(db, get_redis())

    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## RahaSeva API

REST API for the RahaSeva local-services marketplace:
- **Auth**: email/password and Google sign-in, JWT access + refresh tokens
- **Services**: nearby provider discovery by service type and distance
- **Bookings**: create, track, complete and rate service bookings
- **Emergency**: emergency requests with automatic provider dispatch and tracking
- **Wallet**: money balance, reward points, tiers and referrals
- **Video consultations**: sessions, artifacts and feedback
- **Cost estimator**: template and fallback price estimates
- **Community**: volunteers and unpaid help requests

### Authentication
Protected endpoints accept `Authorization: Bearer <access_token>` or `x-auth-token: <access_token>`.

### Roles
- `user`: book services, request emergency help, manage wallet
- `helper`: service provider and/or community volunteer
- `admin`: verification, templates, moderation
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (outermost first) ───────────────────────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
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
        Per-IP limit for unauthenticated requests.
        Skips health, docs and metrics. Fails open if Redis is unavailable.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)

        authenticated = (
            request.headers.get("Authorization", "").startswith("Bearer ")
            or request.headers.get("x-auth-token")
        )
        if authenticated:
            return await call_next(request)

        try:
            from config.redis_client import redis_client
            if redis_client:
                client_ip = request.client.host if request.client else "unknown"
                allowed = await RedisCache(redis_client).check_rate_limit(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
                if not allowed:
                    logger.warning(f"Rate limit exceeded for IP {client_ip}")
                    return JSONResponse(
                        status_code=429,
                        content={"detail": "Rate limit exceeded. Please slow down."},
                        headers={"Retry-After": "60"},
                    )
        except Exception as e:
            logger.error(f"Rate limit check failed: {str(e)}")

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed or missing input is a 400, with the first problem spelled out."""
        errors = exc.errors()
        message = "Invalid request"
        if errors:
            first = errors[0]
            field = ".".join(str(p) for p in first.get("loc", ())[1:])
            message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
        return JSONResponse(
            status_code=400,
            content={"detail": message, "errors": jsonable_encoder(errors)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def route_not_found_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and "endpoint" not in request.scope:
            return JSONResponse(
                status_code=404,
                content={"success": False, "message": f"Route {request.url.path} not found"},
            )
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"])
    async def health_check():
        from config.redis_client import redis_client

        db_ok = await check_db()
        checks = {
            "status": "ok" if db_ok else "degraded",
            "message": f"{settings.APP_NAME} is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.APP_VERSION,
            "database": {
                "status": "connected" if db_ok else "disconnected",
                "is_connected": db_ok,
            },
        }

        try:
            if redis_client:
                await redis_client.ping()
                checks["redis"] = "ok"
            else:
                checks["redis"] = "not_initialized"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "auth": "/api/auth",
                "services": "/api/services",
                "bookings": "/api/bookings",
                "emergency": "/api/emergency",
                "wallet": "/api/wallet",
                "video_consultations": "/api/video-consultations",
                "cost_estimator": "/api/cost-estimator",
                "community": "/api/community",
                "admin": "/api/admin",
            },
        }

    # Register all service routers
    for router in (
        auth_router,
        provider_router,
        booking_router,
        emergency_router,
        wallet_router,
        video_router,
        estimator_router,
        community_router,
        admin_router,
    ):
        app.include_router(router, prefix="/api")

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data():
    """Seed cost estimation templates on first run (development only)."""
    from shared.models.models import CostEstimation
    from sqlalchemy import select, func

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(CostEstimation.id)))
        if count and count > 0:
            return

        seed_templates = [
            {
                "service_type": "plumber", "problem_type": "leak-repair",
                "description": "Fix a leaking tap, pipe joint or flush tank",
                "base_price": 400, "price_range_low": 300, "price_range_high": 900,
                "price_factors": [
                    {"name": "concealed_pipe", "description": "Pipe inside the wall", "multiplier": 1.5, "additional_cost": 200},
                    {"name": "weekend", "description": "Saturday or Sunday visit", "multiplier": 1.2, "additional_cost": 0},
                ],
                "estimated_hours": 1, "estimated_minutes": 30,
                "parts_cost": 250, "transport_cost": 100, "emergency_surcharge": 300,
            },
            {
                "service_type": "electrician", "problem_type": "wiring",
                "description": "Repair or replace faulty household wiring",
                "base_price": 600, "price_range_low": 500, "price_range_high": 2500,
                "price_factors": [
                    {"name": "full_room", "description": "Rewire an entire room", "multiplier": 2.5, "additional_cost": 0},
                ],
                "estimated_hours": 2, "estimated_minutes": 0,
                "parts_cost": 500, "transport_cost": 100, "emergency_surcharge": 400,
            },
            {
                "service_type": "doctor", "problem_type": "general",
                "description": "General physician home visit or video consultation",
                "base_price": 800, "price_range_low": 500, "price_range_high": 1500,
                "price_factors": [
                    {"name": "night_visit", "description": "Between 10pm and 6am", "multiplier": 1.5, "additional_cost": 0},
                ],
                "estimated_hours": 0, "estimated_minutes": 45,
                "parts_cost": 0, "transport_cost": 150, "emergency_surcharge": 500,
            },
        ]

        for t in seed_templates:
            db.add(CostEstimation(**t))

        await db.commit()
        logger.info(f"Seeded {len(seed_templates)} cost estimation templates")


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
