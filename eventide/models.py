"""SQLAlchemy models for Eventide.

Every entity collection shares two tables: ``records`` holds the JSON state
of each keyed record and ``record_index`` holds the live keys of each
collection in insertion order.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from .utils import utcnow

Base = declarative_base()


def _now() -> datetime:
    return utcnow()


class Record(Base):
    __tablename__ = "records"

    collection = Column(String(64), primary_key=True)
    key = Column(String(128), primary_key=True)
    state = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class IndexEntry(Base):
    __tablename__ = "record_index"
    __table_args__ = (UniqueConstraint("index_name", "key", name="uq_record_index_key"),)

    # Autoincrement id doubles as the insertion sequence used for listing.
    id = Column(Integer, primary_key=True, autoincrement=True)
    index_name = Column(String(64), nullable=False, index=True)
    key = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
