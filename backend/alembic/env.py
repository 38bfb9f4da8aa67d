"""Alembic environment for the rx-portal schema.

Migrations run over the synchronous psycopg2 driver.  The URL comes from
``Settings.DATABASE_URL_SYNC``, or is derived from the asyncpg URL the
application uses.
"""
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

import rxportal.models  # noqa: F401 - registers every table on Base.metadata
from rxportal.config import get_settings
from rxportal.database import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def _database_url() -> str:
    settings = get_settings()
    if settings.DATABASE_URL_SYNC:
        return settings.DATABASE_URL_SYNC
    url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2")
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return url


# configparser treats % as interpolation
config.set_main_option("sqlalchemy.url", _database_url().replace("%", "%%"))


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
