"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers and startup/shutdown events.

Production features:
- Multiple stateless instances behind NGINX; per-booking writes serialised in Redis
- Structured JSON logging with request ids
- Unauthenticated rate limiting
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.database import close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.utils.errors import BookingBusy, BookingError

# Service routers
from services.admin.router import router as admin_router
from services.booking.router import router as booking_router
from services.catalog.router import router as catalog_router
from services.dispatch.router import router as partner_router
from services.notification.router import router as notification_router
from services.rating.router import router as rating_router
from services.settlement.router import router as settlement_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": settings.INSTANCE_NAME or os.getenv("HOSTNAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} API...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    # Seed scrap catalog, only in dev
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
## ♻️ Scrap Pickup Platform API

Booking lifecycle and partner dispatch for doorstep scrap pickup:
- **Bookings**: create with items, confirm, cancel, audit timeline
- **Dispatch**: automatic least-loaded assignment, partner accept / on the way / arrived
- **Settlement**: final weights, reconciled amount, cash / UPI payment
- **Ratings**: one rating per completed pickup
- **Notifications**: in-app inbox + FCM push
- **Admin**: partners, manual dispatch, rates, dashboard

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.

### Roles
- `USER`: Book pickups, settle, rate
- `PARTNER`: Accept and run pickups, record weights
- `ADMIN`: Full platform access
        """,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters, outermost first) ────────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time", "Retry-After"],
    )
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
        Per-IP limit for unauthenticated callers (the public catalog).
        Authenticated traffic is limited at NGINX.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)

        try:
            from config.redis_client import redis_client
            auth_header = request.headers.get("Authorization", "")
            if redis_client and not auth_header.startswith("Bearer "):
                client_ip = request.client.host if request.client else "unknown"
                key = f"rate:unauth:{client_ip}"

                count = await redis_client.incr(key)
                if count == 1:
                    await redis_client.expire(key, 60)

                if count > settings.RATE_LIMIT_UNAUTH_PER_MINUTE:
                    logger.warning(f"Rate limit exceeded for IP {client_ip}")
                    return JSONResponse(
                        status_code=429,
                        content={"detail": "Rate limit exceeded. Please slow down."},
                        headers={"Retry-After": "60"},
                    )
        except Exception as e:
            # Fail open if Redis is down
            logger.error(f"Rate limit check failed: {e}")

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        """Domain errors carry their own HTTP status and stable code."""
        request_id = getattr(request.state, "request_id", None)
        headers = {"Retry-After": "1"} if isinstance(exc, BookingBusy) else None
        logger.info(f"[{request_id}] {exc.code}: {exc.message} {exc.context or ''}")
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "request_id": request_id},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text

        from config.database import AsyncSessionLocal
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
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
        }

    app.include_router(booking_router)
    app.include_router(settlement_router)
    app.include_router(partner_router)
    app.include_router(rating_router)
    app.include_router(notification_router)
    app.include_router(catalog_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

SEED_CATALOG = {
    "Paper": {"Newspaper": "12", "Cardboard": "8"},
    "Metal": {"Iron": "30", "Copper": "450"},
    "Plastic": {"PET Bottles": "15", "Hard Plastic": "10"},
    "Electronics": {"Mobile Phones": "50", "Laptops": "100"},
}


async def seed_initial_data():
    """Seed scrap categories and their rates on first run (development only)."""
    from sqlalchemy import func, select

    from config.database import AsyncSessionLocal
    from shared.models.models import ScrapCategory, ScrapRate

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(ScrapCategory.id)))
        if count and count > 0:
            return  # Already seeded

        seeded = 0
        for parent_name, children in SEED_CATALOG.items():
            parent = ScrapCategory(id=uuid.uuid4(), name=parent_name, unit="kg")
            db.add(parent)
            for name, price in children.items():
                child = ScrapCategory(id=uuid.uuid4(), name=name, parent_id=parent.id, unit="kg")
                db.add(child)
                db.add(ScrapRate(category_id=child.id, price_per_kg=Decimal(price)))
                seeded += 1

        await db.commit()
        logger.info(f"Seeded {seeded} scrap categories with rates")


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
