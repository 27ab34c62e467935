"""Keyed record store shared by every entity collection.

Each collection is described by an :class:`EntitySchema`. Records are JSON
documents addressed by key; a key is live only while it is present in the
collection's index, which also fixes listing order. Every function takes the
SQLAlchemy session it should run on as its first argument.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, delete as sa_delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .config import settings
from .errors import AlreadyExists, InvalidInput, NotFound, WriteConflict
from .models import IndexEntry, Record
from .utils import is_str, utcnow

logger = logging.getLogger("uvicorn.error")

State = dict[str, Any]
Transform = Callable[[State], Mapping[str, Any]]


@dataclass(frozen=True)
class EntitySchema:
    """Names and defaults for one entity collection."""

    entity_name: str
    index_name: str
    initial_state: Mapping[str, Any]
    seed_data: tuple[Mapping[str, Any], ...] = ()
    key_field: str = "id"


def _indexed_join(schema: EntitySchema):
    return and_(IndexEntry.key == Record.key, IndexEntry.index_name == schema.index_name)


def _record_filter(schema: EntitySchema, key: str):
    return and_(Record.collection == schema.entity_name, Record.key == key)


def _read(session: Session, schema: EntitySchema, key: str) -> tuple[State, int]:
    stmt = (
        select(Record.state, Record.version)
        .join(IndexEntry, _indexed_join(schema))
        .where(_record_filter(schema, key))
    )
    row = session.execute(stmt).first()
    if row is None:
        raise NotFound(f"{schema.entity_name} {key} not found")
    return dict(row.state), row.version


def _check_key_unchanged(schema: EntitySchema, key: str, state: Mapping[str, Any]) -> None:
    if schema.key_field in state and state[schema.key_field] != key:
        raise InvalidInput(f"{schema.key_field} cannot be changed")


def _claim_key(session: Session, schema: EntitySchema, key: str, now) -> bool:
    """Add ``key`` to the index; False when another writer already holds it."""
    result = session.execute(
        sqlite_insert(IndexEntry)
        .values(index_name=schema.index_name, key=key, created_at=now)
        .on_conflict_do_nothing(index_elements=["index_name", "key"])
    )
    return result.rowcount == 1


def _write_record(session: Session, schema: EntitySchema, key: str, record: State, now) -> None:
    # Any existing row for a freshly claimed key is stale and gets replaced.
    stmt = sqlite_insert(Record).values(
        collection=schema.entity_name,
        key=key,
        state=record,
        version=1,
        created_at=now,
        last_modified=now,
    )
    session.execute(
        stmt.on_conflict_do_update(
            index_elements=["collection", "key"],
            set_={
                "state": stmt.excluded.state,
                "version": 1,
                "created_at": now,
                "last_modified": now,
            },
        )
    )


def _build_record(schema: EntitySchema, state: Mapping[str, Any]) -> tuple[str, State]:
    record = {**copy.deepcopy(dict(schema.initial_state)), **copy.deepcopy(dict(state))}
    key = record.get(schema.key_field)
    if not is_str(key):
        raise InvalidInput(f"{schema.entity_name} requires a {schema.key_field}")
    return key, record


def exists(session: Session, schema: EntitySchema, key: str) -> bool:
    stmt = (
        select(Record.key)
        .join(IndexEntry, _indexed_join(schema))
        .where(_record_filter(schema, key))
        .limit(1)
    )
    return session.execute(stmt).first() is not None


def create(session: Session, schema: EntitySchema, state: Mapping[str, Any]) -> State:
    """Store a new record and add its key to the index.

    Missing fields are filled from ``schema.initial_state``. Raises
    :class:`AlreadyExists` when the key is already indexed.
    """
    key, record = _build_record(schema, state)
    now = utcnow()
    if not _claim_key(session, schema, key, now):
        raise AlreadyExists(f"{schema.entity_name} {key} already exists")
    _write_record(session, schema, key, record, now)
    return record


def get_state(session: Session, schema: EntitySchema, key: str) -> State:
    state, _ = _read(session, schema, key)
    return state


def get_many(session: Session, schema: EntitySchema, keys: Iterable[str]) -> dict[str, State]:
    """Fetch several records in one query; absent keys are left out."""
    wanted = list(dict.fromkeys(keys))
    if not wanted:
        return {}
    stmt = (
        select(Record.key, Record.state)
        .join(IndexEntry, _indexed_join(schema))
        .where(Record.collection == schema.entity_name, Record.key.in_(wanted))
    )
    return {row.key: dict(row.state) for row in session.execute(stmt)}


def patch(session: Session, schema: EntitySchema, key: str, fields: Mapping[str, Any]) -> State:
    """Shallow-merge ``fields`` into the stored record and return the result."""
    _check_key_unchanged(schema, key, fields)
    current, _ = _read(session, schema, key)
    updated = {**current, **copy.deepcopy(dict(fields))}
    session.execute(
        update(Record)
        .where(_record_filter(schema, key))
        .values(state=updated, version=Record.version + 1, last_modified=utcnow())
        .execution_options(synchronize_session=False)
    )
    return updated


def mutate(
    session: Session,
    schema: EntitySchema,
    key: str,
    transform: Transform,
    *,
    max_retries: int | None = None,
) -> State:
    """Apply ``transform`` to the current record without losing concurrent writes.

    The write only lands if the record version is still the one that was
    read; otherwise the record is re-read and the transform re-applied, up
    to ``max_retries`` attempts before :class:`WriteConflict` is raised.
    """
    attempts = settings.mutate_max_retries if max_retries is None else max_retries
    if attempts < 1:
        raise ValueError("max_retries must be >= 1")
    for attempt in range(1, attempts + 1):
        current, version = _read(session, schema, key)
        updated = dict(transform(copy.deepcopy(current)))
        _check_key_unchanged(schema, key, updated)
        result = session.execute(
            update(Record)
            .where(_record_filter(schema, key), Record.version == version)
            .values(state=updated, version=version + 1, last_modified=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return updated
        logger.info(
            "Write conflict on %s %s (attempt %d/%d)",
            schema.entity_name,
            key,
            attempt,
            attempts,
        )
    raise WriteConflict(
        f"{schema.entity_name} {key} changed concurrently; gave up after {attempts} attempts"
    )


def delete(session: Session, schema: EntitySchema, key: str) -> bool:
    """Remove the record and its index entry; return whether it was live."""
    removed = session.execute(
        sa_delete(IndexEntry)
        .where(IndexEntry.index_name == schema.index_name, IndexEntry.key == key)
        .execution_options(synchronize_session=False)
    ).rowcount
    session.execute(
        sa_delete(Record)
        .where(_record_filter(schema, key))
        .execution_options(synchronize_session=False)
    )
    return bool(removed)


def list_states(session: Session, schema: EntitySchema) -> list[State]:
    """Return every indexed record in index insertion order."""
    stmt = (
        select(Record.state)
        .join(IndexEntry, _indexed_join(schema))
        .where(Record.collection == schema.entity_name)
        .order_by(IndexEntry.id.asc())
    )
    return [dict(state) for state in session.scalars(stmt)]


def ensure_seed(session: Session, schema: EntitySchema) -> int:
    """Insert ``schema.seed_data`` when the collection index is empty."""
    if not schema.seed_data:
        return 0
    stmt = select(IndexEntry.id).where(IndexEntry.index_name == schema.index_name).limit(1)
    if session.execute(stmt).first() is not None:
        return 0
    inserted = 0
    now = utcnow()
    for state in schema.seed_data:
        key, record = _build_record(schema, state)
        # Another caller seeding at the same time may already hold the key.
        if not _claim_key(session, schema, key, now):
            continue
        _write_record(session, schema, key, record, now)
        inserted += 1
    logger.info("Seeded %d %s records", inserted, schema.entity_name)
    return inserted
