"""Core application components."""

from inheritx.core.config import settings
from inheritx.core.database import Base, get_db, engine

__all__ = ["settings", "Base", "get_db", "engine"]
