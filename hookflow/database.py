"""
Database connection and session management for hookflow.

Provides:
- create_session_factory(): engine + sessionmaker for a database URL
- session_scope(): context manager for DB sessions (rollback on error)
"""

from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

SessionFactory = Callable[[], Session]


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """
    Create a session factory bound to a new engine.

    pool_pre_ping=True ensures connections are valid before using them.
    In-memory SQLite shares one connection so every session sees the
    same database (used by tests and the local queue backend).
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
    else:
        engine = create_engine(database_url, pool_pre_ping=True, echo=echo)

    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory: SessionFactory) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with session_scope(services.session_factory) as db:
            workflow = db.get(Workflow, "wf-1")
            db.add(execution)
            db.commit()

    The session is automatically closed when exiting the context,
    and rolled back if an exception occurs.
    """
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
