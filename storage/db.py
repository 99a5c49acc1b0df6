"""
db.py
------
Database bootstrap for the reconciliation engine.

Defines the SQLAlchemy declarative Base and builds engines and session
factories from the configured URL. Nothing here is created at import time:
callers (the pipeline, the CLI, tests) ask for a session factory and pass it
to the components that need one.

- File-based SQLite gets check_same_thread=False so independent sessions can
  be processed from worker threads.
- In-memory SQLite uses a StaticPool so every session sees the same database.
"""

import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config.config_loader import get_database_config, get_database_url

logger = logging.getLogger(__name__)

# Declarative base class for ORM models
Base = declarative_base()


def create_db_engine(url: str | None = None, echo: bool | None = None) -> Engine:
    """
    Creates an engine for the given URL (defaults to config / env override).
    """
    url = url or get_database_url()
    if echo is None:
        echo = bool(get_database_config().get("echo", False))

    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)

    if url.startswith("sqlite"):
        # SQLite leaves foreign keys off unless asked per connection.
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def init_db(engine: Engine) -> None:
    """Creates all tables that do not exist yet."""
    # Importing registers the mapped classes on Base.metadata.
    import storage.tables  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database schema ready ({engine.url.render_as_string(hide_password=True)}).")


def make_session_factory(engine: Engine) -> sessionmaker:
    """Standard session factory handed to the engine components."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def setup_database(url: str | None = None) -> sessionmaker:
    """Engine + schema + session factory in one call."""
    engine = create_db_engine(url)
    init_db(engine)
    return make_session_factory(engine)
