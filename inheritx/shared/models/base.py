"""
Base model classes for the engine's tables.

Every table sets its own __tablename__. Timestamps are naive UTC.
"""

from sqlalchemy import Column, DateTime, Integer

from inheritx.core.database import Base
from inheritx.core.timezone import utcnow


class TimestampMixin:
    """created_at / updated_at, maintained by the ORM."""

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class BaseModel(Base, TimestampMixin):
    """Integer surrogate key plus timestamps."""

    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id}>"
