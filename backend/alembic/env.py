"""
Alembic migration environment for the booking core schema.

Migrations run over the sync driver (DATABASE_URL_SYNC); the service itself
talks to the database through asyncpg. SQLite URLs are migrated in batch
mode because SQLite cannot ALTER most constraints in place.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

import bookingcore.models  # noqa: F401 - every table registers itself on Base.metadata
from bookingcore.core.config import get_settings
from bookingcore.db.base import Base

config = context.config
config.set_main_option("sqlalchemy.url", get_settings().DATABASE_URL_SYNC)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _options(url: str) -> dict:
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def migrate_offline() -> None:
    """Emit the SQL for `alembic upgrade --sql` without a connection."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"}, **_options(url))
    with context.begin_transaction():
        context.run_migrations()


def migrate_online() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        context.configure(connection=connection, **_options(str(engine.url)))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    migrate_offline()
else:
    migrate_online()
