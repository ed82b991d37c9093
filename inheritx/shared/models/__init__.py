"""Shared database models."""

from inheritx.shared.models.base import BaseModel, TimestampMixin
from inheritx.shared.models.activity import ActivityLog, Setting

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "ActivityLog",
    "Setting",
]
