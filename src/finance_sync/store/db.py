"""
Database engine and session management.

Dependencies: sqlalchemy, src.finance_sync.config.settings
System role: Connection lifecycle for the local NetSuite cache
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from src.finance_sync.config.settings import Settings


class Base(DeclarativeBase):
    """Declarative base shared by every cache table."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """created_at / updated_at maintained by SQLAlchemy (UTC)."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


def get_engine(database_url: str | None = None) -> Engine:
    """
    Create the SQLAlchemy engine for `DATABASE_URL` (defaults from Settings).

    SQLite URLs get `check_same_thread=False` so a scheduler thread can reuse
    the engine.
    """
    url = database_url or Settings.from_env().database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    # Import registers every model on Base.metadata.
    from src.finance_sync.store import models  # noqa: F401

    Base.metadata.create_all(engine)


def get_session_factory(engine: Engine | None = None) -> sessionmaker:
    """
    Session factory bound to `engine` with autocommit/autoflush off.

    Tables are created on first use.
    """
    engine = engine or get_engine()
    init_db(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
