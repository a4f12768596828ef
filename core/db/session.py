"""
Database Session Management

Lazily builds a pooled engine from Config and hands out sessions, either
as a context manager for scripts or as a FastAPI dependency (one session
per request).
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, exc, pool, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from utils.config import Config


logger = logging.getLogger(__name__)


_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(config: Config) -> Engine:
    """
    Create an engine for the configured database.

    SQLite gets a single-connection pool usable across threads; other
    databases get a sized QueuePool with pre-ping.
    """
    if config.is_sqlite:
        database = make_url(config.database_url).database
        if database and database != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)
        return create_engine(
            config.database_url,
            connect_args={"check_same_thread": False},
            poolclass=pool.StaticPool if ":memory:" in config.database_url else None,
            echo=config.database_echo,
        )

    return create_engine(
        config.database_url,
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
        pool_timeout=config.database_pool_timeout,
        pool_recycle=config.database_pool_recycle,
        pool_pre_ping=True,
        echo=config.database_echo,
    )


@event.listens_for(pool.Pool, "invalidate")
def receive_invalidate(dbapi_conn, connection_record, exception):
    """Log connections dropped from the pool."""
    logger.warning("Database connection invalidated: %s", exception)


def get_engine() -> Engine:
    """Get the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        config = Config.load()
        _engine = build_engine(config)
        logger.info("Database engine created for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_factory


def configure_engine(engine: Engine) -> None:
    """Use a specific engine (tests, embedding)."""
    global _engine, _session_factory
    _engine = engine
    _session_factory = None


def reset_engine() -> None:
    """Dispose of the engine; the next use builds a fresh one from Config."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Session with commit on success and rollback on error.

    Usage:
        with get_db_session() as session:
            session.get(PropertyRecord, uprn)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except exc.SQLAlchemyError:
        session.rollback()
        logger.exception("Database session rolled back")
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding one session per request.

    Routers commit explicitly; anything left uncommitted is rolled back
    when the session closes.
    """
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def health_check() -> bool:
    """True if the database answers a trivial query."""
    try:
        with get_db_session() as session:
            session.execute(text("SELECT 1"))
        return True
    except exc.SQLAlchemyError:
        logger.exception("Database health check failed")
        return False


def create_all_tables(engine: Engine = None) -> None:
    """
    Create all tables defined in models.

    There is no migration tooling; tables are created if missing.
    """
    from core.db.base import Base, import_all_models

    import_all_models()
    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("Database tables created")


def drop_all_tables(engine: Engine = None) -> None:
    """Drop all tables. Development and tests only."""
    from core.db.base import Base, import_all_models

    import_all_models()
    logger.warning("Dropping all database tables")
    Base.metadata.drop_all(bind=engine or get_engine())
