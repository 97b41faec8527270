"""Run-history database.

Every ``run`` is recorded in a small SQL database (SQLite by default) so
that ``runs`` and ``attest`` can look at past runs. This module owns the
engine, the declarative base of the history models and transactional
sessions.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from reprobuild.config import get_settings

MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


class Base(DeclarativeBase):
    """Declarative base of the run-history models."""


def get_engine(db_url: str | None = None) -> Engine:
    """Create the engine of the history database.

    File-backed SQLite databases get their parent directory created. An
    in-memory database is pinned to a single connection so that every
    session sees the same tables.

    Args:
        db_url: Database URL; defaults to the ``db_url`` setting.
    """
    db_url = db_url or get_settings().db_url
    if not db_url.startswith("sqlite"):
        return create_engine(db_url)

    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if db_url in MEMORY_URLS:
        options["poolclass"] = StaticPool
    else:
        Path(db_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(db_url, **options)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Session factory bound to ``engine`` (or the configured database)."""
    return sessionmaker(
        bind=engine or get_engine(), autoflush=False, expire_on_commit=False
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Session committed when the block succeeds and rolled back otherwise."""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the run-history tables if they do not exist yet."""
    # The models register themselves on Base when imported
    from reprobuild.builds import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


@contextmanager
def history_session(db_url: str | None = None) -> Generator[Session, None, None]:
    """Open the history database, creating its tables, for one transaction.

    The engine is disposed afterwards so no SQLite file handle outlives the
    command.
    """
    engine = get_engine(db_url)
    try:
        create_all_tables(engine)
        with get_session(get_session_factory(engine)) as session:
            yield session
    finally:
        engine.dispose()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "history_session",
]
