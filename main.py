"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers, startup/shutdown events.

Features:
- Structured JSON logging
- Request ID + process time headers on every response
- Unauthenticated rate limiting backed by Redis (fails open)
- Uniform {"message": ...} error bodies
- Prometheus metrics
"""

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
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.database import close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.utils.exceptions import AppError, DependencyError

# Service routers
from services.analytics.router import router as analytics_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.driver.router import router as driver_router
from services.emergency.router import router as emergency_router
from services.hospital.router import router as hospital_router
from services.notification.router import router as notification_router
from services.realtime.router import router as realtime_router


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


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        handlers=[handler],
        force=True,
    )


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    await ensure_admin_account()
    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def _validation_message(exc: RequestValidationError) -> str:
    """First failing field as a readable sentence."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Ambulance Booking API

REST + WebSocket API for ambulance dispatch:
- **Auth**: email/password registration and login, JWT bearer tokens
- **Bookings**: pending → assigned → en_route → arrived → completed, cancellable until terminal
- **Drivers**: live location, availability, ratings
- **Hospitals**: directory with radius search
- **Notifications**: in-app notifications, pushed live over `/ws`
- **Emergency**: one-tap critical alert
- **Analytics**: admin dashboard

### Authentication
All protected endpoints require `Authorization: Bearer <token>`.
Get a token from `/auth/register` or `/auth/login`.

### Roles
- `patient`: create and cancel own bookings, leave feedback
- `driver`: share location, advance assigned bookings
- `admin`: assign drivers, see everything
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
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
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Unauthenticated requests: RATE_LIMIT_UNAUTH_PER_MINUTE per IP.
        Authenticated requests and health/metrics/docs are not limited here.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)

        from config.redis_client import RedisCache, redis_client

        if redis_client and not request.headers.get("Authorization", "").startswith("Bearer "):
            client_ip = request.client.host if request.client else "unknown"
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
            except Exception as e:
                # Fail open when Redis is down
                logger.error(f"Rate limit check failed: {e}")
                allowed = True
            if not allowed:
                logger.warning(f"Rate limit exceeded for IP {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={"message": "Too many requests. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": _validation_message(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Database error: {exc}", exc_info=True)
        error = DependencyError()
        return JSONResponse(
            status_code=error.status_code,
            content={"message": error.message, "requestId": request_id},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"message": detail, "requestId": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Liveness probe: database and Redis reachability. No auth."""
        from sqlalchemy import text

        from config.database import AsyncSessionLocal
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            logger.warning("Health check: database unreachable", exc_info=True)
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client is None:
                raise RuntimeError("Redis not initialized")
            await redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            logger.warning("Health check: redis unreachable", exc_info=True)
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

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(booking_router)
    app.include_router(driver_router)
    app.include_router(hospital_router)
    app.include_router(notification_router)
    app.include_router(emergency_router)
    app.include_router(analytics_router)
    app.include_router(realtime_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Startup Data ──────────────────────────────────────────────

async def ensure_admin_account():
    """Create the bootstrap admin from settings if it does not exist yet."""
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD):
        return

    from config.database import AsyncSessionLocal
    from services.user.repository import UserRepository
    from shared.models.models import User, UserRole
    from shared.utils.security import hash_password

    async with AsyncSessionLocal() as db:
        users = UserRepository(db)
        if await users.find_by_email(settings.ADMIN_EMAIL):
            return
        await users.create(User(
            name=settings.ADMIN_NAME,
            email=settings.ADMIN_EMAIL,
            phone="",
            password_hash=hash_password(settings.ADMIN_PASSWORD),
            role=UserRole.ADMIN,
            verified=True,
        ))
        await db.commit()
        logger.info(f"Created admin account {settings.ADMIN_EMAIL}")


SEED_HOSPITALS = [
    ("Kandy General Hospital", "Kandy General Hospital, Kandy, Sri Lanka", 7.2906, 80.6337,
     "+94 81 222 2261", "public", ["Emergency", "Cardiology", "Neurology", "Orthopedics"]),
    ("Teaching Hospital Kandy", "Teaching Hospital Kandy, Peradeniya Rd, Kandy, Sri Lanka", 7.2973, 80.6350,
     "+94 81 223 8250", "public", ["Emergency", "Trauma", "ICU", "Surgery"]),
    ("Asiri Medical Hospital Kandy", "Asiri Medical Hospital, Kandy, Sri Lanka", 7.2869, 80.6304,
     "+94 81 223 3500", "private", ["Emergency", "Cardiology", "Oncology", "Neurology"]),
    ("National Hospital of Sri Lanka", "National Hospital of Sri Lanka, Colombo, Sri Lanka", 6.9271, 79.8612,
     "+94 11 269 1111", "public", ["Emergency", "Trauma", "ICU", "All Specialties"]),
    ("Asiri Medical Hospital Colombo", "Asiri Medical Hospital, Colombo, Sri Lanka", 6.9044, 79.8606,
     "+94 11 446 6100", "private", ["Emergency", "Cardiology", "Oncology", "Neurology"]),
    ("Gampaha General Hospital", "Gampaha General Hospital, Gampaha, Sri Lanka", 7.0873, 80.0142,
     "+94 33 222 2261", "public", ["Emergency", "General Medicine", "Surgery"]),
    ("Karapitiya Teaching Hospital", "Karapitiya Teaching Hospital, Galle, Sri Lanka", 6.0535, 80.2210,
     "+94 91 223 2261", "public", ["Emergency", "Trauma", "ICU", "Surgery"]),
    ("Jaffna Teaching Hospital", "Jaffna Teaching Hospital, Jaffna, Sri Lanka", 9.6615, 80.0255,
     "+94 21 222 2261", "public", ["Emergency", "General Medicine", "Surgery"]),
    ("Anuradhapura General Hospital", "Anuradhapura General Hospital, Anuradhapura, Sri Lanka", 8.3114, 80.4037,
     "+94 25 222 2261", "public", ["Emergency", "General Medicine", "Surgery"]),
    ("Kurunegala General Hospital", "Kurunegala General Hospital, Kurunegala, Sri Lanka", 7.4818, 80.3609,
     "+94 37 222 2261", "public", ["Emergency", "General Medicine", "Surgery"]),
    ("Ratnapura General Hospital", "Ratnapura General Hospital, Ratnapura, Sri Lanka", 6.6828, 80.3992,
     "+94 45 222 2261", "public", ["Emergency", "General Medicine", "Surgery"]),
]


async def seed_initial_data():
    """Seed the hospital directory on first run (development only)."""
    from sqlalchemy import func, select

    from config.database import AsyncSessionLocal
    from config.redis_client import RedisCache, redis_client
    from shared.models.models import Hospital, HospitalType

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(Hospital.id)))
        if count and count > 0:
            return  # Already seeded

        hospitals = []
        for name, address, lat, lng, phone, type_, services in SEED_HOSPITALS:
            hospitals.append(Hospital(
                name=name,
                address=address,
                lat=lat,
                lng=lng,
                phone=phone,
                type=HospitalType(type_),
                services=services,
            ))
        db.add_all(hospitals)

        await db.commit()
        logger.info(f"Seeded {len(SEED_HOSPITALS)} hospitals")

    if redis_client:
        await RedisCache(redis_client).index_hospitals(
            (str(h.id), h.lng, h.lat) for h in hospitals
        )


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
