"""Shared pytest fixtures for Eventide."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from jose import jwt
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read at import time; tokens in tests are signed with this key.
os.environ.setdefault("EVENTIDE_AUTH_SECRET", "eventide-test-secret")

from eventide import api, database, storage
from eventide.config import settings
from eventide.models import Base


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = database.make_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    session_factory = database.make_session_factory(engine)
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def make_token(sub: str, email: str, **claims) -> str:
    payload = {"sub": sub, "email": email, **claims}
    return jwt.encode(payload, settings.auth_secret, algorithm=settings.auth_algorithm)


@pytest.fixture()
def auth_headers():
    """Build an Authorization header for an identity."""

    def _headers(sub: str, email: str, **claims) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(sub, email, **claims)}"}

    return _headers


@pytest.fixture()
def file_engine(tmp_path):
    """A file-backed database so separate connections contend for SQLite locks."""

    engine = database.make_engine(f"sqlite:///{tmp_path / 'shared.sqlite'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()
