"""
Admin service - dashboard statistics and audit trail queries.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from inheritx.core.timezone import format_datetime_for_api
from inheritx.modules.plans.models import Beneficiary, Distribution, DistributionStatus, Plan, PlanStatus
from inheritx.shared.models.activity import ActivityLog


def serialize_activity(entry: ActivityLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor": entry.actor,
        "plan_id": entry.plan_id,
        "activity_type": entry.activity_type,
        "description": entry.description,
        "metadata": entry.details,
        "old_status": entry.old_status,
        "new_status": entry.new_status,
        "created_at": format_datetime_for_api(entry.created_at),
    }


def get_stats(db: Session) -> Dict[str, Any]:
    """Plan counts by status, claim totals, failed distributions and the latest activity."""
    by_status = dict(db.query(Plan.status, func.count(Plan.id)).group_by(Plan.status).all())
    recent = db.query(ActivityLog).order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(10).all()

    return {
        "plans": {
            "total": sum(by_status.values()),
            **{s.value.lower(): by_status.get(s.value, 0) for s in PlanStatus},
        },
        "claims": {
            "completed": db.query(func.count(Beneficiary.id)).filter(Beneficiary.has_claimed.is_(True)).scalar(),
            "outstanding": db.query(func.count(Beneficiary.id)).join(Plan).filter(
                Beneficiary.has_claimed.is_(False),
                Plan.status == PlanStatus.ACTIVE.value,
            ).scalar(),
        },
        "distributions": {
            "failed": db.query(func.count(Distribution.id)).filter(
                Distribution.status == DistributionStatus.FAILED.value
            ).scalar(),
            "executed": db.query(func.count(Distribution.id)).filter(
                Distribution.status == DistributionStatus.EXECUTED.value
            ).scalar(),
        },
        "recent_activity": [serialize_activity(a) for a in recent],
    }


def list_activity(
    db: Session,
    plan_id: Optional[int] = None,
    activity_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    query = db.query(ActivityLog)
    if plan_id is not None:
        query = query.filter(ActivityLog.plan_id == plan_id)
    if activity_type:
        query = query.filter(ActivityLog.activity_type == activity_type)
    rows = query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).offset(offset).limit(limit).all()
    return [serialize_activity(a) for a in rows]
