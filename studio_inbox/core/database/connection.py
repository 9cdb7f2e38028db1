"""
Database connection and session management.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.pool import StaticPool
from typing import Generator, Optional
import logging
import time

from studio_inbox.core.config import get_settings

logger = logging.getLogger(__name__)

engine = None
SessionLocal: Optional[sessionmaker] = None


def _normalize_url(database_url: str) -> str:
    # Railway/Heroku style URLs
    if database_url.startswith('postgres://'):
        return database_url.replace('postgres://', 'postgresql://', 1)
    return database_url


def _engine_kwargs(database_url: str) -> dict:
    if database_url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in database_url or database_url in ('sqlite://', 'sqlite:///'):
            # A single shared connection keeps the in-memory database alive
            kwargs['poolclass'] = StaticPool
        return kwargs

    settings = get_settings()
    return {
        'pool_pre_ping': True,  # Verify connections before using
        'pool_size': settings.database_pool_size,
        'max_overflow': settings.database_max_overflow,
        'pool_recycle': 3600,
        'connect_args': {'connect_timeout': 10},
    }


def init_db(database_url: Optional[str] = None, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Initialize the database engine and session factory with retry logic.
    Call this once at application startup.

    Args:
        database_url: Overrides DATABASE_URL from settings
        max_retries: Number of connection attempts
        retry_delay: Seconds to wait between retries (multiplied by attempt number)

    Raises:
        RuntimeError: If connection fails after all retries
    """
    global engine, SessionLocal

    url = _normalize_url(database_url or get_settings().database_url)

    for attempt in range(max_retries):
        try:
            engine = create_engine(url, echo=False, **_engine_kwargs(url))

            # Test connection
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
            logger.info(f"Database initialized: {url.split('@')[1] if '@' in url else url}")
            return engine

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {max_retries} attempts")
                raise RuntimeError(f"Failed to connect to database: {e}") from e


def get_session_factory() -> sessionmaker:
    """Session factory used by the sync engine (one session per folder pass)."""
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Get a database session (FastAPI dependency and CLI helper).

    Usage:
        from studio_inbox.core.database import get_db

        db = next(get_db())
    """
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    db = SessionLocal()
    try:
        yield db
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def create_tables():
    """
    Create all tables in the database.
    """
    if not engine:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
