"""Database engine and session management.

SQLAlchemy 2.x declarative base plus a transactional `session_scope` helper.
Timestamps are stored as naive UTC everywhere.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from invoicing.shared.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all pipeline tables."""


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


def create_db_engine(settings: Settings) -> Engine:
    """Create an engine for the configured database.

    Args:
        settings: Application settings with database_url

    Returns:
        SQLAlchemy Engine
    """
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        # Worker tasks hop threads via asyncio.to_thread
        connect_args["check_same_thread"] = False

    engine = create_engine(settings.database_url, connect_args=connect_args, future=True)
    logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to the engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    # Import registers the mapped classes on Base.metadata
    import invoicing.store.models  # noqa: F401

    Base.metadata.create_all(engine)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Commits on success, rolls back on any exception and always closes.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
