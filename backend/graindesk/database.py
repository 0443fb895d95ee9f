from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

from graindesk.config import settings

db_url = str(settings.database_url)
is_postgres = db_url.startswith("postgresql")
is_sqlite = db_url.startswith("sqlite")

# Reported in the startup log; None where the driver does not pool.
POOL_CONFIG: dict[str, int | str | None] = {
    "pool_size": None,
    "max_overflow": None,
    "pool_timeout": None,
    "pool_recycle": None,
    "use_null_pool": None,
}


def _engine_kwargs() -> dict:
    kwargs: dict = {"future": True}
    if is_sqlite:
        # Sessions are handed across threadpool workers by FastAPI.
        kwargs["connect_args"] = {"check_same_thread": False}
        return kwargs
    if not is_postgres:
        return kwargs

    # psycopg3 takes connect_timeout in seconds; avoids long hangs on DB outages.
    kwargs["connect_args"] = {"connect_timeout": settings.db_connect_timeout_seconds}
    kwargs["pool_pre_ping"] = True
    if settings.db_use_null_pool:
        # Transaction poolers (pgbouncer) own the pooling.
        kwargs["poolclass"] = NullPool
        POOL_CONFIG["use_null_pool"] = "true"
        return kwargs

    pool = {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout_seconds,
        "pool_recycle": settings.db_pool_recycle_seconds,
    }
    kwargs.update(pool)
    POOL_CONFIG.update(pool, use_null_pool="false")
    return kwargs


engine = create_engine(db_url, **_engine_kwargs())
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        if is_postgres and settings.db_statement_timeout_ms > 0:
            db.execute(text(f"SET statement_timeout = {int(settings.db_statement_timeout_ms)}"))
        yield db
    finally:
        db.close()
