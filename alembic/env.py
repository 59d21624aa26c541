"""Alembic env.py: migrations for the single application schema.

Usage:
  alembic upgrade head
  alembic -x url=sqlite:///./gelatin.db upgrade head   # local SQLite
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from gelatin_erp.config import settings
from gelatin_erp.database import Base
from gelatin_erp.models import *  # noqa: F401,F403

config = context.config
url = context.get_x_argument(as_dictionary=True).get("url", settings.database_url_sync)
config.set_main_option("sqlalchemy.url", url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=url.startswith("sqlite"),
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
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
