"""Database session management."""

from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from campaign_engine.config import settings

SessionFactory = Callable[[], AbstractContextManager[Session]]


def engine_options(database_url: str) -> dict[str, Any]:
    """Engine keyword arguments suitable for the given database URL."""
    if database_url.startswith("sqlite"):
        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10}


# Create engine
engine = create_engine(
    settings.database_url,
    echo=settings.database_echo,
    **engine_options(settings.database_url),
)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_session() -> Generator[Session, None, None]:
    """Get a database session (for FastAPI dependency injection)."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def session_scope_factory(factory: sessionmaker[Session]) -> SessionFactory:
    """Build a transactional scope around sessions from ``factory``.

    The scope commits on success, rolls back on error and always closes. Services
    take one of these so tests can point them at their own engine.
    """

    @contextmanager
    def scope() -> Generator[Session, None, None]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


# Session scope for use outside of FastAPI (services, Celery tasks, CLI)
get_session_context = session_scope_factory(SessionLocal)


def create_tables(bind: Engine | None = None) -> None:
    """Create all tables directly from the ORM metadata (development and tests)."""
    from campaign_engine.db.models import Base

    Base.metadata.create_all(bind or engine)


def init_db() -> None:
    """Initialize database connection and verify connectivity."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
