from alembic import context
from sqlalchemy import engine_from_config, pool

from adflow.coordinator.settings import get_settings

config = context.config


def _database_url() -> str:
    # `alembic -x dburl=...` selects the target database; defaults to the raw store
    url = context.get_x_argument(as_dictionary=True).get("dburl") or get_settings().raw_database_url
    if not url:
        raise RuntimeError("no database url: pass -x dburl=... or set ADFLOW_RAW_DATABASE_URL")
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://") :]
    return url


def run_migrations_offline() -> None:
    context.configure(url=_database_url(), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
