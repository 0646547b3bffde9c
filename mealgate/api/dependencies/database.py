"""Database dependency for FastAPI routes."""
from __future__ import annotations

from typing import Generator

from sqlalchemy.orm import Session

from mealgate.core.database import SessionLocal, get_engine


def get_db() -> Generator[Session, None, None]:
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


__all__ = ["get_db"]
