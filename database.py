"""
Database Configuration and Session Management
============================================

Main database engine, session factory and table creation for the escrow
payment service.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pooling suited to the backend"""
    if database_url.startswith("sqlite"):
        # In-memory sqlite must share one connection or every session sees an empty database
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            return create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Session factory
SessionLocal = build_session_factory(engine)


@contextmanager
def managed_session(session_factory: Optional[SessionFactory] = None) -> Generator[Session, None, None]:
    """
    Session scope: commit on success, rollback on error, always close.

    Usage:
        with managed_session() as session:
            session.add(obj)
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info(f"Creating database tables ({len(Base.metadata.tables)} models registered)")
        Base.metadata.create_all(bind=target, checkfirst=True)
        return True
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        return False


def test_connection(bind: Optional[Engine] = None) -> bool:
    """Run a trivial query to confirm the database answers"""
    target = bind or engine
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection test failed: {e}")
        return False
