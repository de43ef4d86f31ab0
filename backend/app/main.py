"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload

The scheduler triggers jobs over HTTP:
    POST /api/v1/jobs/weather-alerts     (daily)
    POST /api/v1/jobs/outbreak-scan      (every few minutes, or outbreak-check per insert)
    POST /api/v1/jobs/deliveries/retry   (every few minutes)
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

# ── Core infrastructure ──
from backend.app.core.cache import close_redis
from backend.app.core.config import settings
from backend.app.core.database import close_db
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.logging_config import get_logger, setup_logging
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.store import get_store

# ── API routers ──
from backend.app.api.v1.jobs import router as jobs_router
from backend.app.api.v1.notifications import router as notifications_router
from backend.app.api.v1.outbreaks import router as outbreaks_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s] store=%s push=%s email=%s match=%s",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        settings.STORE_BACKEND, settings.PUSH_PROVIDER, settings.EMAIL_PROVIDER,
        settings.CONDITION_MATCH_MODE,
    )
    store = get_store()
    # Production schema is owned by migrations
    if not settings.is_production and hasattr(store, "create_all"):
        try:
            store.create_all()
        except SQLAlchemyError as e:
            logger.error("Could not initialise database tables: %s", e)
    yield
    # Shutdown: close connections
    close_redis()
    close_db()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Proactive alert engine for smallholder farmers. "
        "Evaluates next-day Open-Meteo forecasts per district against "
        "heavy-rain, heat, cold and spray-window rules, detects crop "
        "disease outbreaks from clustered reporter observations, and "
        "fans out deduplicated in-app, push and email notifications."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(jobs_router)
app.include_router(notifications_router)
app.include_router(outbreaks_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "store": settings.STORE_BACKEND,
        "jobs": [
            route.path for route in jobs_router.routes
            if getattr(route, "path", "").startswith("/api/v1/jobs")
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
def health_check():
    """Deep health probe — checks all subsystems."""
    return run_health_check().to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = run_health_check()
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
