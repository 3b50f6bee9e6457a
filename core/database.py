"""Engine/session setup for the state store."""

from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config.settings import DATABASE_URL, DATABASE_ECHO

Base = declarative_base()


def make_engine(url: Optional[str] = None, echo: bool = DATABASE_ECHO) -> Engine:
    url = url or DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        # request threads, provisioning workers and sweeps share one file;
        # writers queue on the database lock instead of failing immediately
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(url, echo=echo, connect_args=connect_args)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    import core.models  # noqa: F401

    Base.metadata.create_all(engine)
