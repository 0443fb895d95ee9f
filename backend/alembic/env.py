from contextlib import contextmanager
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine

# alembic.ini prepends the backend folder to sys.path.
from graindesk import models  # noqa: F401  (registers the tables on Base.metadata)
from graindesk.config import settings
from graindesk.database import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


@contextmanager
def _connection():
    """The app's own connection when it migrates on startup, a fresh one otherwise.

    Reusing the app's connection keeps its advisory lock held for the upgrade.
    """

    handed_over = config.attributes.get("connection")
    if handed_over is not None:
        yield handed_over
        return
    engine = create_engine(settings.database_url, future=True)
    try:
        with engine.connect() as connection:
            yield connection
    finally:
        engine.dispose()


def run_migrations_offline() -> None:
    context.configure(
        url=settings.database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=settings.database_url.startswith("sqlite"),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    with _connection() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # SQLite cannot ALTER most constraints in place.
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
