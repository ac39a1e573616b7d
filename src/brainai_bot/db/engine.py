"""
Database engine and session management
PostgreSQL in production, SQLite accepted for local development and tests
"""
import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .base import Base
from ..config import config
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_db_engine(database_url: str) -> Engine:
    """
    Create database engine for the given URL
    
    Args:
        database_url: SQLAlchemy connection string
    
    Returns:
        Configured Engine
    
    Raises:
        ConfigurationError: If the URL is empty or uses an unsupported backend
    """
    if not database_url:
        raise ConfigurationError("DATABASE_URL is required but not set")
    
    if database_url.startswith("postgresql"):
        engine = create_engine(
            database_url,
            pool_pre_ping=True,  # Detect dead connections before use
            pool_size=5,
            max_overflow=5,
            pool_recycle=900,
            pool_timeout=10,
            echo=False,
            connect_args={
                "connect_timeout": 10,
                "application_name": "brainai_bot",
            },
        )
        logger.info("PostgreSQL engine created")
    elif database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url == "sqlite://":
            # One shared connection so every session sees the same in-memory database
            engine = create_engine(
                database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_engine(database_url, connect_args={"check_same_thread": False})
        
        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        
        logger.info("SQLite engine created (development/test only)")
    else:
        raise ConfigurationError(f"Unsupported DATABASE_URL scheme: {database_url.split(':', 1)[0]}")
    
    return engine


def init_db(engine: Engine) -> None:
    """Create tables that do not exist yet"""
    from . import models  # noqa: F401  (registers models on Base.metadata)
    
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


def get_engine() -> Engine:
    """Get the process-wide engine, created lazily from config"""
    global _engine
    if _engine is None:
        _engine = create_db_engine(config.DATABASE_URL)
    return _engine


def get_session_factory() -> sessionmaker:
    """Get the process-wide session factory"""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory
