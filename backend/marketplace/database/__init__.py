"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from marketplace.core.config import settings

logger = logging.getLogger(__name__)

# Seconds a SQLite writer waits on a locked database before failing.
SQLITE_BUSY_TIMEOUT_SECONDS = 5

_POSTGRES_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
}


def build_engine(db_url: str, *, echo: bool = False, **overrides: Any) -> Engine:
    """Create an engine with dialect-appropriate pool and connect arguments."""
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        connect_args.update(overrides.pop("connect_args", {}))
        new_engine = create_engine(db_url, echo=echo, connect_args=connect_args, **overrides)

        @event.listens_for(new_engine, "connect")
        def _sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return new_engine

    kwargs = dict(_POSTGRES_POOL_KWARGS)
    kwargs.update(overrides)
    return create_engine(db_url, echo=echo, **kwargs)


engine: Engine = build_engine(settings.database_url, echo=settings.database_echo)


# Log pool events for monitoring
@event.listens_for(engine, "connect")
def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
    connection_record.info["connect_time"] = datetime.now()
    logger.debug("Database connection established")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


__all__ = [
    "Base",
    "SessionLocal",
    "build_engine",
    "engine",
    "get_db",
]
