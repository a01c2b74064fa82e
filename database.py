"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the GoaGuide booking lifecycle core.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import ProgrammingError

from config import Config
from models import Base
from utils.model_guards import register_model_guards

logger = logging.getLogger(__name__)

# Audit immutability and fixed booking amounts are enforced at flush time
register_model_guards()


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create an engine for the configured store.

    PostgreSQL gets a bounded pool and a server-side statement timeout so no
    operation blocks indefinitely. SQLite (local runs and tests) gets a busy
    timeout so concurrent writers queue instead of failing immediately.
    """
    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")
    echo = Config.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        sqlite_engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(sqlite_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    return create_engine(
        url,
        pool_size=Config.DB_POOL_SIZE,
        max_overflow=Config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=Config.DB_POOL_TIMEOUT,
        echo=echo,
        connect_args={
            "connect_timeout": Config.DB_CONNECT_TIMEOUT,
            "application_name": Config.SERVICE_NAME,
            "options": f"-c statement_timeout={Config.DB_STATEMENT_TIMEOUT_MS}",
        },
    )


engine = build_engine()

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except ProgrammingError as e:
        # Indexes left over from a previous run are expected
        if "already exists" in str(e):
            logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")
            return True
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


def get_session() -> Session:
    """Get a new database session"""
    return SessionLocal()


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


def get_pool_stats() -> Dict[str, Any]:
    """Connection pool statistics for monitoring"""
    pool = engine.pool
    stats: Dict[str, Any] = {"pool_class": type(pool).__name__}
    for name in ("size", "checkedout", "overflow"):
        reader = getattr(pool, name, None)
        stats[name] = reader() if callable(reader) else "N/A"
    return stats
