"""
Claim API routes.
Public endpoints used by beneficiaries. Errors only ever report
"not yet claimable", "invalid code or details" or "already claimed".
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from inheritx.core.database import get_db
from inheritx.modules.claims.verifier import ClaimVerifier
from inheritx.modules.ledger.client import LedgerClient, get_ledger_client
from inheritx.modules.plans.store import parse_base_units

router = APIRouter()


class VerifyClaimRequest(BaseModel):
    plan_id: int
    claim_code: str = Field(..., max_length=32)
    beneficiary_name: str = Field(..., max_length=100)
    beneficiary_email: str = Field(..., max_length=200)
    beneficiary_relationship: str = Field(..., max_length=50)


class CompleteClaimRequest(BaseModel):
    plan_id: int
    beneficiary_index: int
    claimer_address: str
    tx_hash: str
    claimed_amount: str


class ExecuteClaimRequest(VerifyClaimRequest):
    claimer_address: str


@router.get("/plan/{plan_id}")
async def get_claimable_plan(plan_id: int, db: Session = Depends(get_db)):
    """Public claim eligibility for a plan."""
    return ClaimVerifier(db).get_claim_info(plan_id)


@router.get("/global/{global_plan_id}")
async def get_claimable_plan_by_global_id(global_plan_id: int, db: Session = Depends(get_db)):
    """Public claim eligibility looked up by on-chain plan id."""
    return ClaimVerifier(db).get_claim_info_by_global_id(global_plan_id)


@router.post("/verify")
async def verify_claim(request: VerifyClaimRequest, db: Session = Depends(get_db)):
    """
    Verify beneficiary details and claim code.
    Returns the allocation needed for the on-chain claim call.
    """
    allocation = ClaimVerifier(db).verify_claim(
        request.plan_id,
        request.claim_code,
        request.beneficiary_name,
        request.beneficiary_email,
        request.beneficiary_relationship,
    )
    return {"verified": True, **allocation.to_dict()}


@router.post("/complete")
async def complete_claim(request: CompleteClaimRequest, db: Session = Depends(get_db)):
    """Record a claim after the on-chain claim transaction succeeded."""
    all_claimed = ClaimVerifier(db).complete_claim(
        request.plan_id,
        request.beneficiary_index,
        request.claimer_address,
        request.tx_hash,
        parse_base_units(request.claimed_amount),
    )
    return {
        "success": True,
        "message": "Claim completed successfully",
        "all_beneficiaries_claimed": all_claimed,
    }


@router.post("/execute")
def execute_claim(
    request: ExecuteClaimRequest,
    db: Session = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
):
    """Verify and release in one step; the engine relays the escrow release."""
    return ClaimVerifier(db, ledger).claim(
        request.plan_id,
        request.claim_code,
        request.beneficiary_name,
        request.beneficiary_email,
        request.beneficiary_relationship,
        request.claimer_address,
    )


@router.get("/my-claims")
async def my_claims(email: str = Query(..., min_length=3), db: Session = Depends(get_db)):
    """All inheritances registered under an email address."""
    claims = ClaimVerifier(db).claims_for_email(email)
    return {"claims": claims, "count": len(claims)}
