from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# Alembic Config object
config = context.config

# Logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# IMPORTANTE: importa Base y modelos para que target_metadata tenga todo
from wafplane.db import Base  # noqa: E402
from wafplane import models  # noqa: F401,E402

target_metadata = Base.metadata


def _get_db_url() -> str:
    # 1) env var (docker-compose / .env)
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    # 2) fallback: alembic.ini
    ini_url = config.get_main_option("sqlalchemy.url")
    if ini_url:
        return ini_url

    raise RuntimeError("DATABASE_URL no esta configurada y alembic.ini no trae sqlalchemy.url")


def run_migrations_offline() -> None:
    context.configure(
        url=_get_db_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    # Fuerza que engine_from_config use ESTE URL (no el del ini si estuviera distinto)
    section["sqlalchemy.url"] = _get_db_url()

    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
