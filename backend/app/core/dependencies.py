from collections.abc import Generator
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings


def build_engine(database_url: str, **engine_kwargs) -> Engine:
    """Create the engine; SQLite gets cross-thread access, foreign keys and a busy timeout."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True, **engine_kwargs)

    # Pooled connections are not pinned to the thread that opened them (async routes and worker tasks).
    connect_args = {"check_same_thread": False, "timeout": 30}
    connect_args.update(engine_kwargs.pop("connect_args", {}))
    sqlite_engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)

    @event.listens_for(sqlite_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    return sqlite_engine


_database_url = get_settings().database_url
engine: Optional[Engine] = build_engine(_database_url) if _database_url else None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine) if engine else None


def get_db() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
