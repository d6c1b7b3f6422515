"""
Database connection and session management
"""
from contextlib import contextmanager
from typing import Callable, Generator, Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .config import config, get_dsn
from .logging import get_logger

logger = get_logger(__name__)

# Lazily created so importing this module never opens a connection
_engine: Optional[Engine] = None
_SessionLocal: Optional[Callable[[], Session]] = None


def get_engine() -> Engine:
    """Get database engine, creating it if necessary."""
    global _engine
    if _engine is None:
        dsn = get_dsn()
        pool_options = {}
        if not dsn.startswith("sqlite"):
            pool_options = {"pool_size": 10, "max_overflow": 20, "pool_recycle": 3600}
        _engine = create_engine(
            dsn,
            pool_pre_ping=True,
            echo=config.app.debug,
            **pool_options,
        )
        logger.info("Database engine created")
    return _engine


def get_session_factory() -> Callable[[], Session]:
    """Get or create session factory"""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory: Optional[Callable[[], Session]] = None) -> Generator[Session, None, None]:
    """Context manager for database sessions: commit on success, rollback on error"""
    factory = session_factory or get_session_factory()
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """Initialize database tables"""
    from storage.schema import Base
    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("Database tables initialized")


def check_db_connection() -> bool:
    """Check if database connection is working"""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False
