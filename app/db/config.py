"""Database configuration for the messaging service."""
from typing import Callable, Generator
from fastapi import Request
from sqlmodel import create_engine, Session
import logging
import os
from dotenv import load_dotenv
from sqlalchemy import event
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

load_dotenv()

# Use the DATABASE_URL from environment variable, with fallback to SQLite for local dev
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./messaging.db")


def build_engine(database_url: str = DATABASE_URL, **kwargs) -> Engine:
    """Create an engine, enabling foreign keys and WAL mode on SQLite."""
    is_sqlite = database_url.startswith("sqlite")
    connect_args = kwargs.pop("connect_args", {})
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)
        logger.info("Using SQLite database: %s", database_url)
    else:
        kwargs.setdefault("pool_pre_ping", True)
        logger.info("Using database: %s", database_url.split("@")[-1])

    new_engine = create_engine(database_url, echo=False, connect_args=connect_args, **kwargs)

    if is_sqlite:
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in database_url and database_url != "sqlite://":
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return new_engine


engine = build_engine()


def session_factory(bound_engine: Engine) -> Callable[[], Session]:
    """Return a zero-argument callable opening sessions on ``bound_engine``."""
    def _open() -> Session:
        return Session(bound_engine, expire_on_commit=False)
    return _open


def get_session(request: Request) -> Generator[Session, None, None]:
    """Dependency for getting database sessions bound to the application's engine."""
    open_session = getattr(request.app.state, "session_factory", None) or session_factory(engine)
    with open_session() as session:
        yield session
