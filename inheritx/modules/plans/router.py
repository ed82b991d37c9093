"""
Plan API routes.
Owners create plans, attach on-chain ids, change status, recover claim codes and check in.
"""

import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from inheritx.core.auth import get_current_owner
from inheritx.core.database import get_db
from inheritx.core.timezone import format_datetime_for_api
from inheritx.modules.claims.cipher import ClaimCodeCipher, get_cipher
from inheritx.modules.ledger.client import LedgerClient, get_ledger_client
from inheritx.modules.plans.lifecycle import PlanLifecycle
from inheritx.modules.plans.models import Plan
from inheritx.modules.plans.store import (
    BeneficiaryInput,
    PlanInput,
    attach_chain_ids,
    create_plan,
    decrypt_claim_codes,
    get_owned_plan,
    list_plans,
)
from inheritx.modules.proof_of_life.services import ProofOfLifeMonitor, is_inactivity_threshold_exceeded
from inheritx.shared.services.notifications import NotificationService, get_notification_service

logger = logging.getLogger(__name__)

router = APIRouter()


# Request Models

class BeneficiaryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=200)
    relationship: str = Field(..., min_length=1, max_length=50)
    allocated_percentage: int = Field(..., description="Share in basis points (10000 = 100%)")
    claim_code: Optional[str] = Field(None, description="6 alphanumeric characters; generated when omitted")


class CreatePlanRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., max_length=500)
    asset_type: str
    asset_amount: str
    asset_amount_wei: str
    distribution_method: str
    transfer_date: datetime
    periodic_percentage: Optional[int] = None
    end_date: Optional[datetime] = None
    owner_email: Optional[str] = None
    proof_of_life_enabled: bool = False
    early_claim_enabled: bool = False
    notify_beneficiaries: bool = False
    beneficiaries: List[BeneficiaryRequest]
    global_plan_id: Optional[int] = None
    user_plan_id: Optional[int] = None
    tx_hash: Optional[str] = None


class AttachContractRequest(BaseModel):
    global_plan_id: int
    user_plan_id: int
    tx_hash: str


class StatusChangeRequest(BaseModel):
    action: Literal["pause", "resume", "cancel"]


# Serialization

def serialize_plan(plan: Plan, include_beneficiaries: bool = True) -> dict:
    data = {
        "id": plan.id,
        "global_plan_id": plan.global_plan_id,
        "user_plan_id": plan.user_plan_id,
        "tx_hash": plan.tx_hash,
        "owner_address": plan.owner_address,
        "name": plan.name,
        "description": plan.description,
        "asset_type": plan.asset_type,
        "asset_amount": plan.asset_amount,
        "asset_amount_wei": plan.asset_amount_wei,
        "distribution_method": plan.distribution_method,
        "transfer_date": format_datetime_for_api(plan.transfer_date),
        "periodic_percentage": plan.periodic_percentage,
        "end_date": format_datetime_for_api(plan.end_date),
        "proof_of_life_enabled": plan.proof_of_life_enabled,
        "early_claim_enabled": plan.early_claim_enabled,
        "verification_fail_count": plan.verification_fail_count,
        "last_verification_at": format_datetime_for_api(plan.last_verification_at),
        "early_claim_unlocked": is_inactivity_threshold_exceeded(plan),
        "status": plan.status,
        "is_claimed_fully": plan.is_claimed_fully,
        "created_at": format_datetime_for_api(plan.created_at),
    }
    if plan.escrow is not None:
        data["escrow"] = {
            "amount_locked": plan.escrow.amount_locked,
            "fee_bps": plan.escrow.fee_bps,
            "fee_amount": plan.escrow.fee_amount,
            "released_amount": plan.escrow.released_amount,
            "status": plan.escrow.status,
            "lock_tx_hash": plan.escrow.lock_tx_hash,
            "refund_tx_hash": plan.escrow.refund_tx_hash,
        }
    if include_beneficiaries:
        data["beneficiaries"] = [
            {
                "beneficiary_index": b.beneficiary_index,
                "name": b.name,
                "email": b.email,
                "relationship": b.relationship_label,
                "allocated_percentage": b.allocated_percentage,
                "allocated_amount": b.allocated_amount,
                "has_claimed": b.has_claimed,
                "claimed_at": format_datetime_for_api(b.claimed_at),
                "notification_sent": b.notification_sent,
            }
            for b in plan.beneficiaries
        ]
        data["distributions"] = [
            {
                "id": d.id,
                "period_number": d.period_number,
                "amount": d.amount,
                "scheduled_date": format_datetime_for_api(d.scheduled_date),
                "status": d.status,
                "executed_at": format_datetime_for_api(d.executed_at),
                "tx_hash": d.tx_hash,
                "attempts": d.attempts,
            }
            for d in plan.distributions
        ]
    return data


# Routes

@router.post("", status_code=status.HTTP_201_CREATED)
def create_plan_route(
    request: CreatePlanRequest,
    db: Session = Depends(get_db),
    owner: str = Depends(get_current_owner),
    ledger: LedgerClient = Depends(get_ledger_client),
    cipher: ClaimCodeCipher = Depends(get_cipher),
    notifier: NotificationService = Depends(get_notification_service),
):
    """
    Create a plan and lock its escrow.
    The plaintext claim codes are returned in this response only.
    """
    data = PlanInput(
        owner_address=owner,
        beneficiaries=[BeneficiaryInput(**b.model_dump()) for b in request.beneficiaries],
        **request.model_dump(exclude={"beneficiaries"}),
    )
    created = create_plan(db, data, ledger, cipher)
    plan = created.plan

    if plan.owner_email:
        notifier.send_plan_created(plan.owner_email, plan.name, plan.asset_amount, plan.asset_type)

    return {
        "plan": serialize_plan(plan),
        "claim_codes": [
            {"beneficiary_index": index, "claim_code": code}
            for index, code in sorted(created.claim_codes.items())
        ],
    }


@router.get("")
async def list_my_plans(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    owner: str = Depends(get_current_owner),
):
    """List the authenticated owner's plans, newest first."""
    plans = list_plans(db, owner_address=owner, status=status_filter, limit=limit, offset=offset)
    return {"plans": [serialize_plan(p, include_beneficiaries=False) for p in plans], "count": len(plans)}


@router.get("/{plan_id}")
async def get_plan_details(
    plan_id: int,
    db: Session = Depends(get_db),
    owner: str = Depends(get_current_owner),
):
    """Get a plan with beneficiaries, schedule and escrow."""
    return serialize_plan(get_owned_plan(db, plan_id, owner))


@router.put("/{plan_id}/contract")
async def attach_contract(
    plan_id: int,
    request: AttachContractRequest,
    db: Session = Depends(get_db),
    owner: str = Depends(get_current_owner),
):
    """Record the on-chain plan ids after the contract call is confirmed."""
    plan = get_owned_plan(db, plan_id, owner)
    plan = attach_chain_ids(db, plan, request.global_plan_id, request.user_plan_id, request.tx_hash, actor=owner)
    return serialize_plan(plan, include_beneficiaries=False)


@router.put("/{plan_id}/status")
def change_plan_status(
    plan_id: int,
    request: StatusChangeRequest,
    db: Session = Depends(get_db),
    owner: str = Depends(get_current_owner),
    ledger: LedgerClient = Depends(get_ledger_client),
):
    """Pause, resume or cancel a plan. Cancelling refunds the escrow."""
    plan = get_owned_plan(db, plan_id, owner)
    lifecycle = PlanLifecycle(db, ledger)
    if request.action == "pause":
        plan = lifecycle.pause(plan, actor=owner)
    elif request.action == "resume":
        plan = lifecycle.resume(plan, actor=owner)
    else:
        plan = lifecycle.cancel(plan, actor=owner)
    return serialize_plan(plan, include_beneficiaries=False)


@router.get("/{plan_id}/claim-codes")
async def get_claim_codes(
    plan_id: int,
    db: Session = Depends(get_db),
    owner: str = Depends(get_current_owner),
    cipher: ClaimCodeCipher = Depends(get_cipher),
):
    """Recover the plan's claim codes for the owner."""
    plan = get_owned_plan(db, plan_id, owner)
    logger.info(f"Claim codes of plan {plan.id} retrieved by owner")
    return {"plan_id": plan.id, "claim_codes": decrypt_claim_codes(plan, cipher)}


@router.post("/{plan_id}/check-in")
async def check_in(
    plan_id: int,
    db: Session = Depends(get_db),
    owner: str = Depends(get_current_owner),
    notifier: NotificationService = Depends(get_notification_service),
):
    """Owner proof-of-life check-in; resets the missed check-in counter."""
    plan = get_owned_plan(db, plan_id, owner)
    plan = ProofOfLifeMonitor(db, notifier).record_check_in(plan, actor=owner)
    return {
        "plan_id": plan.id,
        "verification_fail_count": plan.verification_fail_count,
        "last_verification_at": format_datetime_for_api(plan.last_verification_at),
    }
