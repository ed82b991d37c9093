"""
Admin API routes.
Operator dashboard, audit trail, failed distribution retries and persisted settings.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from inheritx.core.auth import TokenClaims, require_admin
from inheritx.core.database import get_db
from inheritx.core.errors import ValidationError
from inheritx.core.scheduler import trigger_manual_pass
from inheritx.core.timezone import format_datetime_for_api
from inheritx.modules.admin import services
from inheritx.modules.distributions.services import retry_distribution
from inheritx.modules.plans.router import serialize_plan
from inheritx.modules.plans.store import list_plans
from inheritx.shared.services.activity_log import CREATION_FEE_SETTING, record_activity, upsert_setting

logger = logging.getLogger(__name__)

router = APIRouter()

SETTING_TYPES = {"string", "int", "bool"}


class SettingRequest(BaseModel):
    value: str
    value_type: str = "string"


@router.get("/stats")
async def get_stats(db: Session = Depends(get_db), admin: TokenClaims = Depends(require_admin)):
    """Dashboard statistics."""
    return services.get_stats(db)


@router.get("/plans")
async def list_all_plans(
    status: Optional[str] = None,
    owner: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: TokenClaims = Depends(require_admin),
):
    """List plans across all owners."""
    plans = list_plans(db, owner_address=owner, status=status, limit=limit, offset=offset)
    return {"plans": [serialize_plan(p, include_beneficiaries=False) for p in plans], "count": len(plans)}


@router.get("/activity")
async def list_activity(
    plan_id: Optional[int] = None,
    activity_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: TokenClaims = Depends(require_admin),
):
    """Audit trail, newest first."""
    entries = services.list_activity(db, plan_id=plan_id, activity_type=activity_type, limit=limit, offset=offset)
    return {"activity": entries, "count": len(entries)}


@router.post("/distributions/{distribution_id}/retry")
async def retry_failed_distribution(
    distribution_id: int,
    db: Session = Depends(get_db),
    admin: TokenClaims = Depends(require_admin),
):
    """Re-queue a FAILED distribution period for the next pass."""
    distribution = retry_distribution(db, distribution_id, actor=admin.sub)
    return {
        "id": distribution.id,
        "plan_id": distribution.plan_id,
        "period_number": distribution.period_number,
        "status": distribution.status,
        "attempts": distribution.attempts,
    }


@router.post("/scheduler/run")
def run_scheduler_pass(admin: TokenClaims = Depends(require_admin)):
    """Run one distribution pass immediately."""
    logger.info("Manual distribution pass requested by admin")
    return trigger_manual_pass()


@router.put("/settings/{key}")
async def update_setting(
    key: str,
    request: SettingRequest,
    db: Session = Depends(get_db),
    admin: TokenClaims = Depends(require_admin),
):
    """Create or update a persisted setting such as creation_fee_bps."""
    if request.value_type not in SETTING_TYPES:
        raise ValidationError(f"Unknown setting type {request.value_type!r}")
    if request.value_type == "int" or key == CREATION_FEE_SETTING:
        try:
            number = int(request.value)
        except ValueError:
            raise ValidationError(f"Setting {key!r} must be an integer")
        if key == CREATION_FEE_SETTING and not 0 <= number <= 10000:
            raise ValidationError("Creation fee must be between 0 and 10000 basis points")

    row = upsert_setting(db, key, request.value, "int" if key == CREATION_FEE_SETTING else request.value_type)
    record_activity(
        db,
        actor=admin.sub,
        activity_type="SETTING_UPDATED",
        description=f"Setting {key} set to {request.value}",
        metadata={"key": key, "value": request.value},
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(row)
    return {
        "key": row.key,
        "value": row.value,
        "value_type": row.value_type,
        "updated_at": format_datetime_for_api(row.updated_at),
    }
