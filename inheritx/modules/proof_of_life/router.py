"""
Proof of life API routes.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from inheritx.core.database import get_db
from inheritx.core.timezone import format_datetime_for_api
from inheritx.modules.proof_of_life.services import ProofOfLifeMonitor
from inheritx.shared.services.notifications import NotificationService, get_notification_service

router = APIRouter()


class ConfirmRequest(BaseModel):
    token: str


@router.post("/confirm")
async def confirm_proof_of_life(
    request: ConfirmRequest,
    db: Session = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    """Confirm activity from the link in a check-in prompt. Each link works once."""
    plan = ProofOfLifeMonitor(db, notifier).confirm_token(request.token)
    return {
        "confirmed": True,
        "plan_id": plan.id,
        "last_verification_at": format_datetime_for_api(plan.last_verification_at),
    }
