import logging
from contextlib import contextmanager
from typing import Any
from typing import Iterator

import dotenv
from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from contactsync.config import get_settings

_settings = get_settings()

dotenv.load_dotenv()

logger = logging.getLogger(__name__)

# Create Base class
Base = declarative_base()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        # Websocket handlers and the liveness loop open sessions from the
        # event-loop thread while sync routes run in FastAPI's threadpool.
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        connect_args.setdefault("timeout", 30)

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after a commit so
    records can be serialised into responses and change events once the
    CRUD helper has committed.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


# Default engine and sessionmaker instances for app usage.  Tests overwrite
# ``contactsync.database.default_session_factory`` with one bound to an
# in-memory engine before the application is imported.

_resolved_db_url = _settings.database_url or ("sqlite:///:memory:" if _settings.testing else "sqlite:///./contactsync.db")

default_engine = make_engine(_resolved_db_url)
default_session_factory = make_sessionmaker(default_engine)


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory.

    Resolved at call time so a factory patched in by the test-suite is picked
    up by background services and websocket handlers alike.
    """
    return default_session_factory


def get_db(session_factory: Any = None) -> Iterator[Session]:
    """Dependency provider for database sessions.

    Args:
        session_factory: Optional custom session factory

    Yields:
        SQLAlchemy Session object
    """
    factory = session_factory or get_session_factory()
    db = factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session(session_factory: Any = None):
    """Session context manager for services and background tasks.

    1. Auto-commit on success
    2. Auto-rollback on error
    3. Always close session

    Usage:
        with db_session() as db:
            crud.touch_device(db, device_id)
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
        session.commit()
        logger.debug("Database session committed successfully")

    except Exception as e:
        session.rollback()
        logger.error("Database session rolled back due to error: %s", e)
        raise

    finally:
        session.close()


def initialize_database(engine: Engine = None) -> None:
    """Initialize database tables using the given engine.

    If no engine is provided, uses the default engine.
    """
    # Import models so they are registered with Base before create_all.
    from contactsync.models.models import Contact  # noqa: F401
    from contactsync.models.models import Device  # noqa: F401
    from contactsync.models.models import DeviceSyncStatus  # noqa: F401
    from contactsync.models.models import QueuedMessage  # noqa: F401

    target_engine = engine or default_engine
    Base.metadata.create_all(bind=target_engine)
