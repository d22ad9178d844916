"""Engine and session factory setup.

The process keeps one global engine, created on first use from the
configured URL; tests and tools build their own with
``create_database_engine`` and pass it explicitly.
"""

import os
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./automation_engine.db"

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


class Base(DeclarativeBase):
    """Declarative base for the workflow, execution and queue tables."""


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """New engine for ``database_url``.

    SQLite connections may be used from the scheduler thread, and an
    in-memory database only exists on a single shared connection.
    """
    options = {"echo": echo}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False, **(connect_args or {})}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            options["poolclass"] = StaticPool
    else:
        options["connect_args"] = connect_args or {}
        options["pool_pre_ping"] = True
    return create_engine(database_url, **options)


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """The global engine; the first call decides its URL."""
    global _engine
    if _engine is None:
        url = database_url or os.getenv("AUTOMATION_ENGINE_DATABASE_URL", DEFAULT_DATABASE_URL)
        _engine = create_database_engine(url, echo=echo, connect_args=connect_args)
    return _engine


def _make_session_factory(engine: Engine) -> sessionmaker:
    # Records are converted to dataclasses after commit, so nothing needs refreshing.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Session factory bound to ``engine``, or the cached one for the global engine."""
    global _session_factory
    if engine is not None:
        return _make_session_factory(engine)
    if _session_factory is None:
        _session_factory = _make_session_factory(get_database_engine())
    return _session_factory


def reset_database_engine():
    """Dispose of the global engine so the next call builds a fresh one."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def create_tables(engine: Optional[Engine] = None):
    from . import models  # noqa: F401  registers the tables on Base
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())
