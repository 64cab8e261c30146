"""
ParkWash - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parkwash.core.config import settings
from parkwash.core.logging import setup_logging, get_logger
from parkwash.core.middleware import setup_middleware, setup_exception_handlers
from parkwash.api.routes import router as api_router
from parkwash.db.database import engine, Base
# Registers every model on Base.metadata before create_all
import parkwash.db.models  # noqa: F401

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "wallets", "description": "Wallet balance, history and topups."},
    {"name": "parking", "description": "Parking slot bookings: reserve, check in, checkout, extend, cancel."},
    {"name": "services", "description": "Wash and maintenance service orders."},
    {"name": "admin", "description": "Staff console: approvals, scheduler tick, outbox maintenance."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Parking and car-wash bookings paid from a prepaid wallet.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from parkwash.core.redis_client import close_redis
    await close_redis()
    # Return pooled connections
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", summary="Liveness probe", tags=["health"])
async def health_check() -> dict[str, str]:
    """The process is up; dependencies are not checked."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks the database, Redis and the Celery broker. 503 with per-dependency status when degraded.",
    tags=["health"],
)
async def readiness_check():
    from starlette.responses import JSONResponse

    from parkwash.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
