"""
Database engine and session handling.
"""
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pokify.models.entities import Base
from pokify.utils.logger import LayerLogger


class Database:
    """
    Owns the engine and session factory for one DATABASE_URL.

    SQLite URLs get ``check_same_thread=False`` because sessions are used
    from FastAPI's threadpool (sync endpoints, the request-scoped session
    dependency) and from ``asyncio.to_thread`` calls in async endpoints and
    job workers. In-memory SQLite shares a single connection so every
    session sees the same data.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.logger = LayerLogger("database")

        kwargs = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True

        self.engine = create_engine(url, **kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self):
        """Create missing tables."""
        Base.metadata.create_all(self.engine)
        self.logger.log_action("create_tables", "completed", tables=len(Base.metadata.tables))

    def drop_all(self):
        Base.metadata.drop_all(self.engine)

    def session(self) -> Session:
        return self.session_factory()

    def dispose(self):
        self.engine.dispose()


_database: Optional[Database] = None


def init_database(url: str) -> Database:
    """Create (or replace) the process-wide database and its tables."""
    global _database
    _database = Database(url)
    _database.create_all()
    return _database


def get_database() -> Database:
    if _database is None:
        raise RuntimeError("Database has not been initialised")
    return _database


def get_session() -> Iterator[Session]:
    """FastAPI dependency: one session per request."""
    session = get_database().session()
    try:
        yield session
    finally:
        session.close()
