import logging
import os
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from graindesk.api.router import api_router
from graindesk.config import settings
from graindesk.core.errors import DomainError
from graindesk.core.observability import (
    domain_error_handler,
    global_exception_handler,
    request_logging_middleware,
    uptime_seconds,
    utc_now_iso,
)
from graindesk.database import POOL_CONFIG, engine
from graindesk.services.scheduler import build_runner

MIGRATION_LOCK_KEY = 913000

logger = logging.getLogger("graindesk")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

api_prefix = settings.api_prefix
openapi_url = f"{api_prefix}/openapi.json" if settings.enable_docs else None

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=openapi_url,
)
# Middleware and handlers pick the logger up from app.state.
app.state.logger = logger

app.add_exception_handler(DomainError, domain_error_handler)
app.add_exception_handler(Exception, global_exception_handler)
app.middleware("http")(request_logging_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*", "X-Client-Id", "X-Client-Role"],
)
app.include_router(api_router, prefix=api_prefix)

# Upstream quotes are pushed through POST /reference-prices; no pull source by default.
job_runner = build_runner()


def _is_test_env() -> bool:
    return (settings.environment or "").strip().lower() == "test"


def _run_migrations_if_configured() -> None:
    """``alembic upgrade head`` on startup, one instance at a time on Postgres."""

    if not settings.run_migrations_on_start or _is_test_env():
        return

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    try:
        with engine.connect() as connection:
            on_postgres = connection.dialect.name == "postgresql"
            if on_postgres:
                locked = connection.execute(
                    text("select pg_try_advisory_lock(:k)"), {"k": MIGRATION_LOCK_KEY}
                ).scalar()
                if not locked:
                    logger.info("migrations_skipped_lock_not_acquired")
                    return
            try:
                # alembic/env.py reuses this connection.
                cfg.attributes["connection"] = connection
                command.upgrade(cfg, "head")
                logger.info("migrations_applied")
            finally:
                if on_postgres:
                    connection.execute(
                        text("select pg_advisory_unlock(:k)"), {"k": MIGRATION_LOCK_KEY}
                    )
                    connection.commit()
    except Exception as exc:
        # The API still starts; the failure is visible in the logs.
        logger.error("migrations_failed", extra={"error": str(exc)})


def _scheduler_enabled() -> bool:
    return settings.scheduler_enabled and not _is_test_env()


@app.on_event("startup")
def _startup():
    logger.info(
        "runtime_config",
        extra={
            "pid": os.getpid(),
            "environment": settings.environment,
            "db_pool": POOL_CONFIG,
            "validation_window_minutes": settings.validation_window_minutes,
            "default_commission": str(settings.default_commission),
        },
    )
    _run_migrations_if_configured()
    if _scheduler_enabled():
        job_runner.start()


@app.on_event("shutdown")
def _shutdown():
    if _scheduler_enabled():
        job_runner.stop()
        logger.info("scheduler_stopped")


@app.get("/", tags=["meta"])
def root():
    return {"message": "Grain Desk API", "docs": openapi_url}


@app.get("/health", tags=["meta"])
@app.get("/healthz", tags=["meta"])
def healthcheck():
    """Liveness probe. Keep payload stable for monitoring systems."""

    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": settings.build_version,
    }
