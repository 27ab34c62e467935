"""Engine and session factories shared by the API, the CLI and the tests."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings

DATABASE_URL = f"sqlite:///{settings.database_path}"


def _apply_busy_timeout(dbapi_connection, _record) -> None:
    # Writers wait for the lock instead of failing straight away.
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {int(settings.db_busy_timeout_ms)}")
    cursor.close()


def make_engine(url: str = DATABASE_URL, **kwargs: Any) -> Engine:
    new_engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        future=True,
        **kwargs,
    )
    event.listen(new_engine, "connect", _apply_busy_timeout)
    return new_engine


def make_session_factory(bind: Engine) -> scoped_session:
    """Thread-local sessions that keep loaded state readable after commit."""
    return scoped_session(
        sessionmaker(
            bind=bind,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )


engine = make_engine()
SessionLocal = make_session_factory(engine)


@contextmanager
def get_session():
    """Yield a session that commits on success and rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
