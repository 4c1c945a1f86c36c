"""Database initialization helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .db_models import Base


def build_session_factory(database_url: str) -> tuple[Engine, sessionmaker[Session]]:
    """Create the engine and session factory for the job repository.

    In-memory SQLite URLs share one connection across threads so that the
    worker's thread-pool calls see the same database.
    """

    options: dict[str, Any] = {"future": True}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            options["poolclass"] = StaticPool
    engine = create_engine(database_url, **options)
    return engine, sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables when they do not exist yet."""

    Base.metadata.create_all(engine)
