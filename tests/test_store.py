from __future__ import annotations

import threading
import time

import pytest
from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from eventide import store
from eventide.errors import AlreadyExists, InvalidInput, NotFound, WriteConflict
from eventide.models import Record
from eventide.store import EntitySchema
from eventide.utils import utcnow

NOTES = EntitySchema(
    entity_name="test-note",
    index_name="test-notes",
    initial_state={"id": "", "body": "", "tags": []},
    seed_data=(
        {"id": "seed-1", "body": "first"},
        {"id": "seed-2", "body": "second"},
    ),
)


def _version(session, key: str) -> int:
    stmt = select(Record.version).where(
        Record.collection == NOTES.entity_name, Record.key == key
    )
    return session.execute(stmt).scalar_one()


def test_create_fills_defaults_and_indexes_key(session):
    created = store.create(session, NOTES, {"id": "n1", "body": "hello"})

    assert created == {"id": "n1", "body": "hello", "tags": []}
    assert store.exists(session, NOTES, "n1") is True
    assert store.get_state(session, NOTES, "n1") == created


def test_create_rejects_indexed_key(session):
    store.create(session, NOTES, {"id": "n1"})
    with pytest.raises(AlreadyExists):
        store.create(session, NOTES, {"id": "n1", "body": "again"})
    assert store.get_state(session, NOTES, "n1")["body"] == ""


def test_create_requires_key(session):
    with pytest.raises(InvalidInput):
        store.create(session, NOTES, {"body": "no key"})


def test_missing_key_is_not_found(session):
    assert store.exists(session, NOTES, "ghost") is False
    with pytest.raises(NotFound):
        store.get_state(session, NOTES, "ghost")
    with pytest.raises(NotFound):
        store.patch(session, NOTES, "ghost", {"body": "x"})
    with pytest.raises(NotFound):
        store.mutate(session, NOTES, "ghost", lambda state: state)


def test_unindexed_record_is_invisible_and_replaced_on_create(session):
    now = utcnow()
    session.execute(
        insert(Record).values(
            collection=NOTES.entity_name,
            key="stale",
            state={"id": "stale", "body": "left behind"},
            version=7,
            created_at=now,
            last_modified=now,
        )
    )

    assert store.exists(session, NOTES, "stale") is False
    with pytest.raises(NotFound):
        store.get_state(session, NOTES, "stale")
    assert store.list_states(session, NOTES) == []

    created = store.create(session, NOTES, {"id": "stale", "body": "fresh"})
    assert created["body"] == "fresh"
    assert store.get_state(session, NOTES, "stale")["body"] == "fresh"
    assert _version(session, "stale") == 1


def test_patch_is_shallow_merge_and_bumps_version(session):
    store.create(session, NOTES, {"id": "n1", "body": "old", "tags": ["a", "b"]})

    patched = store.patch(session, NOTES, "n1", {"tags": ["c"]})

    assert patched == {"id": "n1", "body": "old", "tags": ["c"]}
    assert store.get_state(session, NOTES, "n1") == patched
    assert _version(session, "n1") == 2


def test_patch_cannot_change_key(session):
    store.create(session, NOTES, {"id": "n1"})
    with pytest.raises(InvalidInput):
        store.patch(session, NOTES, "n1", {"id": "n2"})


def test_delete_is_idempotent(session):
    store.create(session, NOTES, {"id": "n1"})

    assert store.delete(session, NOTES, "n1") is True
    assert store.delete(session, NOTES, "n1") is False
    assert store.exists(session, NOTES, "n1") is False
    with pytest.raises(NotFound):
        store.get_state(session, NOTES, "n1")


def test_list_follows_index_insertion_order(session):
    for key in ("b", "a", "c"):
        store.create(session, NOTES, {"id": key})
    assert [s["id"] for s in store.list_states(session, NOTES)] == ["b", "a", "c"]

    store.delete(session, NOTES, "b")
    store.create(session, NOTES, {"id": "b"})
    assert [s["id"] for s in store.list_states(session, NOTES)] == ["a", "c", "b"]


def test_get_many_skips_absent_keys(session):
    store.create(session, NOTES, {"id": "n1", "body": "one"})
    store.create(session, NOTES, {"id": "n2", "body": "two"})

    found = store.get_many(session, NOTES, ["n1", "ghost", "n2", "n1"])

    assert set(found) == {"n1", "n2"}
    assert found["n2"]["body"] == "two"
    assert store.get_many(session, NOTES, []) == {}


def test_mutate_applies_transform_to_a_copy(session):
    original = {"id": "n1", "tags": ["a"]}
    store.create(session, NOTES, original)

    def add_tag(state):
        state["tags"].append("b")
        return state

    result = store.mutate(session, NOTES, "n1", add_tag)

    assert original["tags"] == ["a"]
    assert result["tags"] == ["a", "b"]
    assert store.get_state(session, NOTES, "n1")["tags"] == ["a", "b"]
    assert _version(session, "n1") == 2


def test_mutate_reapplies_transform_after_interleaved_write(session):
    store.create(session, NOTES, {"id": "n1", "tags": []})
    observed = []

    def competing(state):
        return {**state, "tags": state["tags"] + ["from-other-writer"]}

    def outer(state):
        observed.append(list(state["tags"]))
        if len(observed) == 1:
            # Another writer lands between this read and this write.
            store.mutate(session, NOTES, "n1", competing)
        return {**state, "tags": state["tags"] + ["mine"]}

    result = store.mutate(session, NOTES, "n1", outer)

    assert observed == [[], ["from-other-writer"]]
    assert result["tags"] == ["from-other-writer", "mine"]
    assert store.get_state(session, NOTES, "n1")["tags"] == ["from-other-writer", "mine"]


def test_mutate_gives_up_after_retry_budget(session):
    store.create(session, NOTES, {"id": "n1", "tags": []})
    attempts = []

    def always_interrupted(state):
        attempts.append(1)
        store.patch(session, NOTES, "n1", {"body": f"edit {len(attempts)}"})
        return {**state, "tags": ["never"]}

    with pytest.raises(WriteConflict):
        store.mutate(session, NOTES, "n1", always_interrupted, max_retries=3)

    assert len(attempts) == 3
    current = store.get_state(session, NOTES, "n1")
    assert current["tags"] == []
    assert current["body"] == "edit 3"


def test_mutate_rejects_empty_retry_budget(session):
    store.create(session, NOTES, {"id": "n1"})
    with pytest.raises(ValueError):
        store.mutate(session, NOTES, "n1", lambda state: state, max_retries=0)


def test_mutate_cannot_change_key(session):
    store.create(session, NOTES, {"id": "n1"})
    with pytest.raises(InvalidInput):
        store.mutate(session, NOTES, "n1", lambda state: {**state, "id": "other"})


def test_ensure_seed_runs_only_on_empty_index(session):
    assert store.ensure_seed(session, NOTES) == 2
    assert [s["id"] for s in store.list_states(session, NOTES)] == ["seed-1", "seed-2"]

    assert store.ensure_seed(session, NOTES) == 0
    assert len(store.list_states(session, NOTES)) == 2


def test_ensure_seed_racing_callers_on_separate_connections(file_engine):
    first = Session(file_engine)
    second = Session(file_engine)
    outcome = {}

    def seed_second():
        try:
            outcome["inserted"] = store.ensure_seed(second, NOTES)
            second.commit()
        except Exception as exc:  # surfaced by the assertions below
            outcome["error"] = exc

    # The first caller holds the write lock with its seed rows uncommitted.
    assert store.ensure_seed(first, NOTES) == 2
    racer = threading.Thread(target=seed_second)
    racer.start()
    time.sleep(0.3)
    first.commit()
    racer.join(timeout=10)

    assert "error" not in outcome, outcome.get("error")
    assert outcome["inserted"] == 0
    with Session(file_engine) as check:
        assert [s["id"] for s in store.list_states(check, NOTES)] == ["seed-1", "seed-2"]
    first.close()
    second.close()


def test_ensure_seed_skips_populated_collection(session):
    store.create(session, NOTES, {"id": "mine"})

    assert store.ensure_seed(session, NOTES) == 0
    assert store.exists(session, NOTES, "seed-1") is False


def test_collections_do_not_share_keys(session):
    others = EntitySchema(
        entity_name="test-other", index_name="test-others", initial_state={"id": ""}
    )
    store.create(session, NOTES, {"id": "shared", "body": "note"})
    store.create(session, others, {"id": "shared"})

    assert store.get_state(session, NOTES, "shared")["body"] == "note"
    assert store.list_states(session, others) == [{"id": "shared"}]
    store.delete(session, others, "shared")
    assert store.exists(session, NOTES, "shared") is True
