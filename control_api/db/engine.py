# control_api/db/engine.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from control_api.db.models import Base
from daq.conf import get_database_url

logger = logging.getLogger(__name__)

# Cache the engine and session factory to avoid recreating them
_engine = None
_session_factory = None


def get_engine():
    """Get SQLAlchemy engine for the server database."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_database_url())
    return _engine


def build_engine(db_url: str):
    """Create an engine and make sure the schema exists."""
    url = make_url(db_url)
    kwargs = {}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            # Single shared connection so every session sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
        else:
            from pathlib import Path

            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(db_url, **kwargs)
    # Create tables if they don't exist (checkfirst=True prevents errors if tables already exist)
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.debug("Server DB schema ready → %s", url.render_as_string(hide_password=True))
    return engine


def set_engine(engine) -> None:
    """Swap the cached engine (used by tests and alternate deployments)."""
    global _engine, _session_factory
    _engine = engine
    _session_factory = None


def get_session():
    """Get database session for the server database."""
    global _session_factory
    if _session_factory is None:
        # Rows are handed to routers after the session closes
        _session_factory = sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _session_factory()
