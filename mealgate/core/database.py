"""Database session and base model configuration."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator, Sequence

from sqlalchemy import create_engine, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .settings import get_settings


class Base(DeclarativeBase):
    """Base declarative class for all ORM models."""


SessionLocal = sessionmaker(autoflush=False, autocommit=False, expire_on_commit=False)

_engine: Engine | None = None


def _build_engine(url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        # Writers queue on the file lock instead of failing immediately.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def configure_database(url: str | None = None) -> Engine:
    """(Re)bind the session factory to ``url`` or the configured database."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = _build_engine(url or get_settings().resolved_database_url)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        return configure_database()
    return _engine


def init_database() -> None:
    """Create database tables for the current metadata."""
    import mealgate.core.models  # noqa: F401 ensures models are registered

    Base.metadata.create_all(bind=get_engine())


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def insert_if_absent(
    db: Session,
    model: type[Base],
    values: dict[str, Any],
    conflict_columns: Sequence[str],
) -> bool:
    """Insert a row unless it collides on ``conflict_columns``.

    Returns ``True`` when this call created the row. Relies on the database's
    unique constraints, so concurrent callers race safely.
    """
    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        module = postgresql if dialect == "postgresql" else sqlite
        stmt = (
            module.insert(model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(conflict_columns))
        )
        return db.execute(stmt).rowcount == 1

    savepoint = db.begin_nested()
    try:
        db.execute(insert(model).values(**values))
    except IntegrityError:
        savepoint.rollback()
        return False
    savepoint.commit()
    return True


__all__ = [
    "Base",
    "SessionLocal",
    "configure_database",
    "get_engine",
    "init_database",
    "insert_if_absent",
    "session_scope",
]
