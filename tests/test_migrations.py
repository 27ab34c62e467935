from __future__ import annotations

import dataclasses

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from eventide import database, storage, store
from eventide.entities import USERS
from eventide.models import Base


def _patch_db(monkeypatch: pytest.MonkeyPatch, engine: Engine, db_path, **overrides) -> None:
    monkeypatch.setattr(storage, "engine", engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "DATABASE_URL", str(engine.url))
    monkeypatch.setattr(database, "SessionLocal", database.make_session_factory(engine))
    fake_settings = dataclasses.replace(storage.settings, database_path=db_path, **overrides)
    monkeypatch.setattr(storage, "settings", fake_settings)


def _get_version(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return conn.execute(text("select version_num from alembic_version")).scalar()


def test_upgrade_database_stamps_existing_db(monkeypatch, tmp_path):
    db_path = tmp_path / "existing.sqlite"
    engine = database.make_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(bind=engine)  # existing schema without Alembic tracking
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Stamped existing database to Alembic head" in actions
    assert _get_version(engine) == "0001_initial"


def test_upgrade_database_creates_fresh_schema(monkeypatch, tmp_path):
    db_path = tmp_path / "fresh.sqlite"
    engine = database.make_engine(f"sqlite:///{db_path}")
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == "0001_initial"
    inspector = inspect(engine)
    assert inspector.has_table("records")
    assert inspector.has_table("record_index")
    unique = inspector.get_unique_constraints("record_index")
    assert any(set(c["column_names"]) == {"index_name", "key"} for c in unique)


def test_upgrade_database_is_repeatable_and_backs_up(monkeypatch, tmp_path):
    db_path = tmp_path / "repeat.sqlite"
    engine = database.make_engine(f"sqlite:///{db_path}")
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    actions = storage.upgrade_database(make_backup=True)

    assert "Applied Alembic migrations to head" in actions
    assert (tmp_path / "repeat.sqlite.bak").exists()
    assert _get_version(engine) == "0001_initial"


def test_init_db_seeds_demo_users_once(monkeypatch, tmp_path):
    db_path = tmp_path / "seeded.sqlite"
    engine = database.make_engine(f"sqlite:///{db_path}")
    _patch_db(monkeypatch, engine, db_path, seed_demo_users=True)

    storage.init_db()
    storage.init_db()

    with database.get_session() as session:
        users = store.list_states(session, USERS)
    assert [user["id"] for user in users] == [seed["id"] for seed in USERS.seed_data]


def test_init_db_skips_seed_when_disabled(monkeypatch, tmp_path):
    db_path = tmp_path / "empty.sqlite"
    engine = database.make_engine(f"sqlite:///{db_path}")
    _patch_db(monkeypatch, engine, db_path, seed_demo_users=False)

    storage.init_db()

    with database.get_session() as session:
        assert store.list_states(session, USERS) == []


def test_engine_connections_wait_on_locks(tmp_path):
    engine = database.make_engine(f"sqlite:///{tmp_path / 'pragma.sqlite'}")

    with engine.connect() as conn:
        timeout = conn.execute(text("PRAGMA busy_timeout")).scalar()

    assert timeout == database.settings.db_busy_timeout_ms
