import logging
from pathlib import Path
from typing import Optional, Union

from alembic import command
from alembic.config import Config
from alembic.util import CommandError
from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parent / "alembic"


class DatabaseInitError(RuntimeError):
    """The backing database could not be opened or migrated."""


class Base(DeclarativeBase):
    pass


def is_memory_database(url: Union[str, URL]) -> bool:
    url = make_url(url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def create_db_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    connect_args: dict[str, object] = {}
    kwargs: dict[str, object] = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
    if is_memory_database(url):
        # one shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool

    eng = create_engine(url, connect_args=connect_args, **kwargs)
    if url.get_backend_name() == "sqlite":
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


def alembic_config(database_url: Optional[str] = None) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    if database_url:
        cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return cfg


def init_schema(eng: Engine) -> None:
    try:
        if is_memory_database(eng.url):
            import models  # noqa: F401  registers tables on Base.metadata

            Base.metadata.create_all(eng)
        else:
            # migrations run on the engine's own connection, not a re-rendered URL
            with eng.begin() as connection:
                cfg = alembic_config()
                cfg.attributes["connection"] = connection
                command.upgrade(cfg, "head")
        with eng.connect():
            pass
    except (SQLAlchemyError, CommandError) as exc:
        raise DatabaseInitError(f"Failed to initialize database {eng.url}") from exc
    logger.info(f"database_ready: url={eng.url}")
