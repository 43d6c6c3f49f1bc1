"""
Engine and session handling for the hedge event journal.

SQLite file by default; any SQLAlchemy URL works. The journal is written from
the event loop thread and from `asyncio.to_thread` workers, so SQLite files
run in WAL mode with cross-thread connections allowed.
"""
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///data/cashcarry.db"
_SQLITE_PREFIX = "sqlite:///"


def _make_engine(database_url: str) -> Engine:
    if not database_url.startswith(_SQLITE_PREFIX):
        return create_engine(database_url, pool_pre_ping=True)

    in_memory = database_url == f"{_SQLITE_PREFIX}:memory:"
    if in_memory:
        # One shared connection, otherwise each thread sees its own empty database
        return create_engine(database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)

    Path(database_url[len(_SQLITE_PREFIX):]).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


class Database:
    """One engine plus its session factory."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = _make_engine(database_url)
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Session that commits on success and rolls back on any error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


_db_instance: Optional[Database] = None


def init_db(database_url: str) -> Database:
    """Create the process-wide journal database for ``database_url`` and its tables."""
    global _db_instance
    # Models must be registered on Base before create_all
    from cashcarry.storage import repository  # noqa: F401

    if _db_instance is not None:
        _db_instance.dispose()
    _db_instance = Database(database_url)
    _db_instance.create_all()
    logger.info("Event journal ready", database_url=database_url.split("@")[-1])
    return _db_instance


def get_db() -> Database:
    """The journal database, initialized from DATABASE_URL (or the default file) on first use."""
    if _db_instance is None:
        return init_db(os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL)
    return _db_instance


def reset_db() -> None:
    """Dispose the current journal database; the next get_db() starts fresh."""
    global _db_instance
    if _db_instance is not None:
        _db_instance.dispose()
    _db_instance = None
