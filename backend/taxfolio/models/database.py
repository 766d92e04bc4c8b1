"""Database configuration and session management."""

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from ..config import get_settings

Base = declarative_base()


def create_db_engine(database_url: str, busy_timeout_seconds: float = 15.0) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections are shared across threads and wait up to
    ``busy_timeout_seconds`` for a locked database before failing.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True, echo=False)

    connect_args = {"check_same_thread": False, "timeout": busy_timeout_seconds}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session gets an empty database
        engine = create_engine(database_url, connect_args=connect_args, poolclass=StaticPool, echo=False)
    else:
        path = Path(database_url.replace("sqlite:///", "", 1))
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(database_url, connect_args=connect_args, echo=False)

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


_settings = get_settings()
engine = create_db_engine(_settings.database_url, _settings.storage_timeout_seconds)
SessionLocal = create_session_factory(engine)


def init_db(bind: Engine = None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)
