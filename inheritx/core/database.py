"""
Database engine and session management.

Request handlers get a session per request through get_db. Scheduler workers
open their own sessions from SessionLocal, one per plan item.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from inheritx.core.config import settings


def _engine_kwargs(url: str) -> dict:
    kwargs = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Worker threads share the engine
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        # One connection per worker plus request headroom
        kwargs["pool_size"] = max(5, settings.SCHEDULER_WORKERS + 2)
    return kwargs


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base for all engine tables."""
    pass


def get_db():
    """FastAPI dependency yielding a session that is closed after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
