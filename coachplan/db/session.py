from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from coachplan.config.settings import settings
from coachplan.errors import ContentError

# Lazy initialization to avoid import-time database connections
_engine = None
_SessionLocal = None


def _get_engine():
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        logger.info(f"Initializing database engine: {settings.database_url}")

        connect_args = {}
        if "sqlite" in settings.database_url.lower():
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {"connect_timeout": 10}

        _engine = create_engine(
            settings.database_url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        logger.info("Database engine initialized")
    return _engine


def get_engine():
    """Get or create the database engine (public API)."""
    return _get_engine()


def _get_session_local():
    """Get or create the session factory (lazy initialization)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_get_engine())
        logger.info("Database session factory initialized")
    return _SessionLocal


def init_db() -> None:
    """Create the document table if it does not exist."""
    from coachplan.db.models import Base

    Base.metadata.create_all(bind=_get_engine())
    logger.info("Document store schema ensured")


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session context manager.

    Commits when the block exits cleanly, rolls back and re-raises otherwise.
    Flushed-but-uncommitted work counts as a change, so commit is unconditional.
    """
    session = _get_session_local()()
    try:
        yield session
        session.commit()
    except ContentError as e:
        # Store-level contract errors (e.g. update of a missing document), not database failures
        logger.debug(f"{type(e).__name__} in session, rolling back: {e}")
        session.rollback()
        raise
    except Exception as e:
        logger.error(f"Database session error, rolling back: {e}. Error type: {type(e).__name__}")
        session.rollback()
        raise
    finally:
        session.close()
