"""Shared service utilities: UTC handling, dialect upserts."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def dialect_insert(db: Session, model: Any):
    """Return an ``INSERT`` construct supporting ``ON CONFLICT`` for the bound dialect.

    Both PostgreSQL and SQLite expose ``on_conflict_do_nothing`` /
    ``on_conflict_do_update`` with the same signature, so callers can build
    upserts once and run them in production and in tests.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Upserts are not supported on dialect {dialect!r}")
