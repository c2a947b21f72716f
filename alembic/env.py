# alembic/env.py
from logging.config import fileConfig
import sys
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from neurobridge.database import Base, DATABASE_URL
from neurobridge import models  # noqa: F401  registers every table on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def sync_url(url: str) -> str:
    """Alembic runs on a blocking driver; map the app's async URL to its sync twin."""
    for async_driver, sync_driver in (
        ("postgresql+asyncpg", "postgresql+psycopg2"),
        ("sqlite+aiosqlite", "sqlite"),
    ):
        if url.startswith(async_driver):
            return sync_driver + url[len(async_driver):]
    return url


db_url = sync_url(DATABASE_URL)
config.set_main_option("sqlalchemy.url", db_url)
# SQLite cannot ALTER most constraints in place
render_as_batch = db_url.startswith("sqlite")


def render_item(type_, obj, autogen_context):
    # fastapi-users' GUID lives outside sqlalchemy; emit an import for it
    if type_ == "type" and obj.__class__.__name__ == "GUID":
        autogen_context.imports.add("from fastapi_users_db_sqlalchemy.generics import GUID")
        return "GUID()"
    return False


def run_migrations_offline() -> None:
    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_item=render_item,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_item=render_item,
            render_as_batch=render_as_batch,
            transaction_per_migration=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
