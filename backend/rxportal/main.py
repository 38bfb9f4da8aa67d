import contextvars
import logging
import traceback
import uuid

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from rxportal.config import get_settings
from rxportal.database import AsyncSessionLocal, engine
from rxportal.middleware.security import SecurityHeadersMiddleware
from rxportal.services.background import side_effects
from rxportal.utils.log_sanitizer import SensitiveDataFilter

settings = get_settings()
logger = logging.getLogger(__name__)

_is_production = settings.APP_ENV == "production"

APP_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Request ID context, propagated into every log record
# ---------------------------------------------------------------------------
request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class _RequestIdFilter(logging.Filter):
    """Inject the current request ID into every log record."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get("-")
        return True


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
)
# Handler filters see records propagated from every child logger
for _handler in logging.getLogger().handlers:
    _handler.addFilter(_RequestIdFilter())
    _handler.addFilter(SensitiveDataFilter())


_PENDING_INDEX_DDL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_refill_requests_pending_order "
    "ON refill_requests (original_order_id) WHERE status = 'pending'"
)


async def _run_startup_migrations():
    """Idempotent schema guards that must exist before serving traffic."""
    async with AsyncSessionLocal() as session:
        try:
            await session.execute(text(_PENDING_INDEX_DDL))
            await session.commit()
            logger.info("startup_migrations: pending refill unique index ensured")
        except Exception as e:
            await session.rollback()
            # Fails when duplicates already exist; run scripts.cleanup_duplicate_refills
            logger.warning("startup_migrations: pending refill index skipped: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await _run_startup_migrations()
    except Exception as exc:
        logger.warning("Startup migrations skipped: %s", exc)

    logger.info("Application startup complete")
    yield

    # --- Graceful shutdown ---
    logger.info("Shutting down, draining %d side effect(s)...", side_effects.pending)
    await side_effects.drain(settings.SIDE_EFFECT_DRAIN_SECONDS)

    try:
        await engine.dispose()
        logger.info("Database connection pool disposed")
    except Exception as exc:
        logger.warning("Error disposing database engine: %s", exc)

    logger.info("Shutdown complete")


app = FastAPI(
    title="DoctorPortal Pharmacy API",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url=None if _is_production else "/docs",
    redoc_url=None if _is_production else "/redoc",
    openapi_url=None if _is_production else "/openapi.json",
)


# ---------------------------------------------------------------------------
# Global exception handler: log unhandled errors, return 500
# ---------------------------------------------------------------------------
@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception on %s %s: %s\n%s",
        request.method,
        request.url.path,
        exc,
        traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Middleware stack (last added = outermost)
# Request flow: RequestID -> CORS -> Security -> Routes
# ---------------------------------------------------------------------------
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
)


@app.middleware("http")
async def _request_id(request: Request, call_next):
    """Attach X-Request-ID to every response and to the log context."""
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    token = request_id_ctx.set(rid)
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
    finally:
        request_id_ctx.reset(token)


# ---------------------------------------------------------------------------
# Route blueprints
# ---------------------------------------------------------------------------
from rxportal.routes.refills import router as refills_router
from rxportal.routes.notifications import router as notifications_router

app.include_router(refills_router, prefix="/api/refills", tags=["Prescription Refills"])
app.include_router(notifications_router, prefix="/api/notifications", tags=["Notifications"])


@app.get("/api/health")
async def health_check():
    """Health check that verifies DB connectivity.

    Returns 503 when the database is unreachable so load balancers stop
    routing traffic to this instance.
    """
    db_ok = False
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except Exception as e:
        logger.warning("health_check: database connection failed: %s", e)

    if not db_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "version": APP_VERSION, "database": "unavailable"},
        )

    return {
        "status": "healthy",
        "version": APP_VERSION,
        "database": "connected",
        "side_effects_pending": side_effects.pending,
    }
