"""
FastAPI application main module.

Hosts the admin trigger surface and owns the two background threads: the
daily accrual trigger and the outbox worker.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import uuid
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from accrual_engine import config, database
from accrual_engine.api.v1 import api_router
from accrual_engine.utils import setup_logging, get_logger
from accrual_engine.database import engine, Base
from accrual_engine.exceptions import AccrualError
from accrual_engine.jobs.daily_trigger import DailyAccrualTrigger
from accrual_engine.jobs.outbox_worker import OutboxWorker
from accrual_engine.services.accrual_scheduler import AccrualScheduler
from accrual_engine.services.cache_invalidation import CacheInvalidator
from accrual_engine.services.outbox_dispatcher import OutboxDispatcher
from accrual_engine.services.realtime import create_notifier
from accrual_engine.services.transaction_coordinator import TransactionCoordinator

VERSION = "1.0.0"
SERVICE_NAME = "accrual-engine"

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/accrual.log"),
    enable_console=True
)

logger = get_logger(__name__)


def build_services(app: FastAPI) -> None:
    """Attach coordinator, scheduler, cache and dispatcher to ``app.state`` for the endpoints."""
    coordinator = TransactionCoordinator()
    cache = CacheInvalidator()
    app.state.transaction_coordinator = coordinator
    app.state.accrual_scheduler = AccrualScheduler(coordinator)
    app.state.cache_invalidator = cache
    app.state.outbox_dispatcher = OutboxDispatcher(cache=cache, notifier=create_notifier())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Creates tables, wires services and runs the background threads while the app is up.
    """
    logger.info("Application startup initiated")
    Base.metadata.create_all(bind=engine)
    build_services(app)

    trigger: Optional[DailyAccrualTrigger] = None
    worker: Optional[OutboxWorker] = None
    if config.ENABLE_BACKGROUND_JOBS:
        worker = OutboxWorker(app.state.outbox_dispatcher)
        worker.start()
        trigger = DailyAccrualTrigger(app.state.accrual_scheduler, app.state.transaction_coordinator)
        trigger.start()
    else:
        logger.info("Background jobs disabled; skipping worker startup")
    app.state.daily_trigger = trigger
    app.state.outbox_worker = worker
    logger.info("Application startup completed", background_jobs=config.ENABLE_BACKGROUND_JOBS)

    try:
        yield
    finally:
        logger.info("Application shutdown initiated")
        if trigger is not None:
            trigger.stop()
        if worker is not None:
            worker.stop(timeout=float(config.OUTBOX_SETTINGS["poll_interval_seconds"]))
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Accrual Engine",
    description="""
    Daily benefit and referral commission accrual engine.

    ## Features
    * **Daily accrual** - Idempotent per-purchase benefit crediting with catch-up
    * **Referral commissions** - Two-level schedule released on fixed days
    * **Transactional outbox** - Cache invalidation and realtime pushes, at-least-once

    ## Authentication
    Admin endpoints require the configured admin token:
    ```
    Authorization: Bearer <ADMIN_API_TOKEN>
    ```
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """Tag every request with an id, time it, and log start/finish."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    log = logger.bind(request_id=request_id, method=request.method, path=request.url.path)
    log.info("Request started", remote_addr=request.client.host if request.client else "unknown")

    response = await call_next(request)

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    log.info("Request completed", status_code=response.status_code, process_time_ms=elapsed_ms)
    return response


# ------------------------------ Error envelopes ----------------------------- #

def _error_response(
    request: Request,
    status_code: int,
    message: Any,
    *,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> JSONResponse:
    body = {
        "success": False,
        "message": message,
        **extra,
        "request_id": getattr(request.state, "request_id", "unknown"),
    }
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that JSONResponse can't encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


@app.exception_handler(AccrualError)
async def accrual_exception_handler(request: Request, exc: AccrualError):
    """Domain errors map to their own 4xx status."""
    logger.warning(
        "Domain error",
        error=str(exc),
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        path=request.url.path,
    )
    return _error_response(request, exc.status_code, str(exc), error_type=type(exc).__name__)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = jsonable_errors(exc)
    logger.warning("Request validation failed", errors=details, path=request.url.path)
    return _error_response(request, 422, "Request validation failed", details=details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
    return _error_response(request, exc.status_code, exc.detail, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


# ------------------------------ Health checks ------------------------------ #

def _probe_database() -> str:
    try:
        with database.SessionLocal() as db:
            db.execute(text("SELECT 1"))
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"


def _probe_redis() -> Optional[str]:
    cache = getattr(app.state, "cache_invalidator", None)
    if cache is None or not config.CACHE_SETTINGS.get("enabled", True):
        return None
    return "healthy" if cache.health_check() else "unavailable"


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Liveness probe for load balancers."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "timestamp": time.time(),
        "background_jobs": config.ENABLE_BACKGROUND_JOBS,
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Database, redis, outbox counts and accrual job state."""
    checks: Dict[str, Any] = {"database": _probe_database()}
    redis_status = _probe_redis()
    if redis_status is not None:
        checks["redis"] = redis_status

    dispatcher = getattr(app.state, "outbox_dispatcher", None)
    if dispatcher is not None:
        checks["outbox"] = dispatcher.stats()
    scheduler = getattr(app.state, "accrual_scheduler", None)
    if scheduler is not None:
        checks["accrual_job"] = scheduler.processing_stats(limit=1)["job"]

    degraded = checks["database"] != "healthy" or checks.get("redis") == "unavailable"
    return {
        "status": "degraded" if degraded else "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "timestamp": time.time(),
        "checks": checks,
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Accrual Engine API",
        "version": VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "accrual_engine.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["accrual_engine"],
        log_level="info",
        access_log=True
    )
