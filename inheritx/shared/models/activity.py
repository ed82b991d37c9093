"""
Activity log and persisted settings models.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index

from inheritx.core.database import Base
from inheritx.core.timezone import utcnow
from inheritx.shared.models.base import BaseModel


class ActivityLog(Base):
    """Append-only audit trail of plan actions and lifecycle transitions."""

    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String(100), nullable=False)  # wallet address, 'admin', 'scheduler', 'beneficiary:<n>'
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="SET NULL"), nullable=True)
    activity_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    details = Column("metadata", JSON, nullable=True)

    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_activity_plan", "plan_id"),
        Index("idx_activity_type", "activity_type"),
        Index("idx_activity_created", "created_at"),
    )


class Setting(BaseModel):
    """Key/value configuration persisted in the database (e.g. creation_fee_bps)."""

    __tablename__ = "settings"

    key = Column(String(100), nullable=False, unique=True)
    value = Column(Text, nullable=False)
    value_type = Column(String(20), nullable=False, default="string")  # 'string', 'int', 'bool'
