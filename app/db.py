"""
Database connection and setup
SQLAlchemy engine and session factory for the event ingest store
"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Base
from config.settings import settings

logger = logging.getLogger("db")


def make_engine(database_url: str) -> Engine:
    """
    Create an engine for ``database_url``.

    SQLite gets ``check_same_thread=False``; an in-memory SQLite URL also
    gets a single shared connection so every session sees the same data.
    """
    kwargs = {"echo": False}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine = make_engine(settings.database_url)

# Session factory
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = None):
    """
    Initialize database - create all tables
    Safe to call multiple times (won't recreate existing tables)
    """
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info(f"Database initialized at: {bind.url}")


def get_session():
    """
    Get a database session for scripts
    Remember to close() when done
    """
    return SessionLocal()
