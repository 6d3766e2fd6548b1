import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import models  # noqa: E402,F401  registers tables on Base.metadata
from config import get_settings  # noqa: E402
from database import Base  # noqa: E402

config = context.config

# the CLI reads alembic.ini; startup builds its Config in code and logs on its own
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

logger = logging.getLogger("alembic.env")

# startup hands over the app engine's connection
shared_connection = config.attributes.get("connection")

if shared_connection is None and not config.get_main_option("sqlalchemy.url"):
    database_url = get_settings().database_url
    logger.info(f"migrations_target: url={database_url}")
    config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

target_metadata = Base.metadata


def run_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_on(connection) -> None:
    # SQLite cannot ALTER most columns in place
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    if shared_connection is not None:
        _run_on(shared_connection)
        return
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        _run_on(connection)


if context.is_offline_mode():
    run_offline()
else:
    run_online()
