"""Engine, session factory and declarative base.

PostgreSQL is the production store: idempotency claims and entitlement
upserts rely on ``ON CONFLICT`` and row locks. SQLite URLs are accepted
for local runs and tests.
"""
from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from app.config import settings

APPLICATION_NAME = "entitlement_sync"


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """Adds created_at / updated_at columns (UTC) to a model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


def _engine_options(database_url: str) -> dict:
    backend = make_url(database_url).get_backend_name()
    if backend == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    options = {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
    }
    if backend == "postgresql":
        options["connect_args"] = {"application_name": APPLICATION_NAME}
    return options


def get_engine(database_url: str | None = None):
    url = database_url or settings.database_url
    return create_engine(url, **_engine_options(url))


engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
