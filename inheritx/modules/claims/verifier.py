"""
Claim verification and completion.

A beneficiary proves entitlement with the four-part identity tuple (name,
email, relationship, claim code). The tuple is hashed the same way it was at
plan creation and compared against each beneficiary's combined hash, so a
match requires every field to agree and a miss does not reveal which one was
wrong.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from inheritx.core.config import Settings, settings as default_settings
from inheritx.core.errors import (
    AlreadyClaimed,
    InvalidAmount,
    InvalidClaimCode,
    PlanNotClaimable,
    ValidationError,
)
from inheritx.core.timezone import format_datetime_for_api, utcnow
from inheritx.modules.claims.cipher import beneficiary_hashes, hash_identity, hashes_equal, is_valid_claim_code
from inheritx.modules.distributions.locks import new_holder_id, plan_lock
from inheritx.modules.ledger.client import LedgerClient
from inheritx.modules.plans.lifecycle import PlanLifecycle
from inheritx.modules.plans.models import TERMINAL_PLAN_STATUSES, Beneficiary, Plan
from inheritx.modules.plans.store import get_beneficiary, get_plan, get_plan_by_global_id, record_escrow_release
from inheritx.modules.proof_of_life.services import (
    is_inactivity_threshold_exceeded,
    is_plan_claimable,
    seconds_until_claimable,
)
from inheritx.shared.services.activity_log import record_activity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimAllocation:
    plan_id: int
    global_plan_id: Optional[int]
    beneficiary_index: int
    allocated_amount: int
    asset_type: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["allocated_amount"] = str(self.allocated_amount)
        return data


class ClaimVerifier:
    """Verifies and completes beneficiary claims on lump-sum plans."""

    def __init__(self, db: Session, ledger: Optional[LedgerClient] = None, config: Optional[Settings] = None):
        self.db = db
        self.ledger = ledger
        self.config = config or default_settings

    def verify_claim(
        self,
        plan_id: int,
        claim_code: str,
        name: str,
        email: str,
        relationship: str,
        now: Optional[datetime] = None,
    ) -> ClaimAllocation:
        """
        Check a claim request and return the allocation it entitles the caller to.

        Only writes an audit row. Raises PlanNotFound, PlanNotClaimable,
        InvalidClaimCode or AlreadyClaimed.
        """
        now = now or utcnow()
        plan = get_plan(self.db, plan_id)

        # Periodic plans are pushed by the scheduler, never claimed
        if not plan.is_lump_sum or not is_plan_claimable(plan, now, self.config.PROOF_OF_LIFE_FAIL_THRESHOLD):
            logger.info(f"Claim on plan {plan_id} rejected: not claimable (status {plan.status})")
            raise PlanNotClaimable(f"Plan {plan_id} is not claimable")

        if not is_valid_claim_code(claim_code or ""):
            logger.info(f"Claim on plan {plan_id} rejected: malformed code")
            raise InvalidClaimCode("Malformed claim code")

        candidate = beneficiary_hashes(name or "", email or "", relationship or "", claim_code).combined_hash
        matched = None
        for beneficiary in plan.beneficiaries:
            # Compare against every row so timing does not depend on the match position
            if hashes_equal(candidate, beneficiary.combined_hash) and matched is None:
                matched = beneficiary
        if matched is None:
            logger.info(f"Claim on plan {plan_id} rejected: no matching beneficiary")
            raise InvalidClaimCode("No beneficiary matches the supplied details")

        if matched.has_claimed:
            raise AlreadyClaimed(f"Beneficiary {matched.beneficiary_index} on plan {plan_id} already claimed")

        record_activity(
            self.db,
            actor=f"beneficiary:{matched.beneficiary_index}",
            activity_type="CLAIM_VERIFIED",
            description=f"Claim verified for beneficiary {matched.beneficiary_index}",
            metadata={"beneficiaryIndex": matched.beneficiary_index},
            plan_id=plan.id,
        )
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Claim verified: plan {plan.id}, beneficiary {matched.beneficiary_index}")
        return ClaimAllocation(
            plan_id=plan.id,
            global_plan_id=plan.global_plan_id,
            beneficiary_index=matched.beneficiary_index,
            allocated_amount=matched.allocated_amount_value,
            asset_type=plan.asset_type,
        )

    def complete_claim(
        self,
        plan_id: int,
        beneficiary_index: int,
        claimer_address: str,
        tx_hash: str,
        claimed_amount: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record a confirmed claim. Only the first call for a beneficiary wins.

        Returns True when this claim was the last one and the plan is now EXECUTED.
        """
        now = now or utcnow()
        plan = get_plan(self.db, plan_id)
        if not plan.is_lump_sum:
            raise PlanNotClaimable(f"Plan {plan_id} pays out on a schedule")
        # A pause after verification must not strand a transfer that already happened
        if plan.status in TERMINAL_PLAN_STATUSES:
            raise PlanNotClaimable(f"Plan {plan_id} is {plan.status}")
        beneficiary = get_beneficiary(self.db, plan_id, beneficiary_index)

        if claimed_amount < 0 or claimed_amount > beneficiary.allocated_amount_value:
            raise InvalidAmount(
                f"Claimed amount {claimed_amount} outside allocation {beneficiary.allocated_amount}"
            )

        try:
            # Conditional update: a concurrent duplicate matches zero rows
            updated = self.db.query(Beneficiary).filter(
                Beneficiary.id == beneficiary.id,
                Beneficiary.has_claimed.is_(False),
            ).update({
                "has_claimed": True,
                "claimed_at": now,
                "claimed_by_address": claimer_address,
                "claimed_amount": str(claimed_amount),
                "claim_tx_hash": tx_hash,
                "updated_at": now,
            }, synchronize_session=False)
            if not updated:
                raise AlreadyClaimed(f"Beneficiary {beneficiary_index} on plan {plan_id} already claimed")

            record_escrow_release(plan, claimed_amount)

            unclaimed = self.db.query(Beneficiary).filter(
                Beneficiary.plan_id == plan_id,
                Beneficiary.has_claimed.is_(False),
            ).count()
            all_claimed = unclaimed == 0
            if all_claimed:
                PlanLifecycle(self.db, self.ledger).mark_executed(plan, actor=claimer_address)

            record_activity(
                self.db,
                actor=claimer_address,
                activity_type="CLAIM_COMPLETED",
                description=f"Beneficiary {beneficiary_index} claimed {claimed_amount}",
                metadata={
                    "beneficiaryIndex": beneficiary_index,
                    "claimerAddress": claimer_address,
                    "claimedAmount": str(claimed_amount),
                    "txHash": tx_hash,
                },
                plan_id=plan_id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.expire_all()
        logger.info(f"Claim completed: plan {plan_id}, beneficiary {beneficiary_index}, tx {tx_hash}")
        return all_claimed

    def claim(
        self,
        plan_id: int,
        claim_code: str,
        name: str,
        email: str,
        relationship: str,
        claimer_address: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Server-relayed claim: verify, release on the ledger, then record.

        Held under the plan lock so two identical requests cannot both reach
        the ledger.
        """
        if self.ledger is None:
            raise RuntimeError("A ledger client is required for relayed claims")

        with plan_lock(self.db, plan_id, self.config.PLAN_LOCK_TTL_SECONDS, holder=new_holder_id("claim")):
            allocation = self.verify_claim(plan_id, claim_code, name, email, relationship, now=now)
            tx_hash = self.ledger.release_escrow(
                allocation.plan_id, allocation.beneficiary_index, allocation.allocated_amount
            )
            all_claimed = self.complete_claim(
                allocation.plan_id,
                allocation.beneficiary_index,
                claimer_address,
                tx_hash,
                allocation.allocated_amount,
                now=now,
            )

        return {
            **allocation.to_dict(),
            "tx_hash": tx_hash,
            "all_beneficiaries_claimed": all_claimed,
        }

    def get_claim_info(self, plan_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Public eligibility summary. Contains no hashes, codes or beneficiary identities."""
        now = now or utcnow()
        plan = get_plan(self.db, plan_id)
        threshold = self.config.PROOF_OF_LIFE_FAIL_THRESHOLD
        claimable = plan.is_lump_sum and is_plan_claimable(plan, now, threshold)
        return {
            "plan_id": plan.id,
            "global_plan_id": plan.global_plan_id,
            "name": plan.name,
            "description": plan.description,
            "asset_type": plan.asset_type,
            "asset_amount": plan.asset_amount,
            "distribution_method": plan.distribution_method,
            "transfer_date": format_datetime_for_api(plan.transfer_date),
            "status": plan.status,
            "is_claimable": claimable,
            "seconds_until_claimable": seconds_until_claimable(plan, now, threshold) if plan.is_lump_sum else None,
            "early_claim_unlocked": is_inactivity_threshold_exceeded(plan, threshold),
            "beneficiaries": [
                {
                    "beneficiary_index": b.beneficiary_index,
                    "allocated_percentage": b.allocated_percentage,
                    "allocated_amount": b.allocated_amount,
                    "has_claimed": b.has_claimed,
                }
                for b in plan.beneficiaries
            ],
        }

    def get_claim_info_by_global_id(self, global_plan_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Same as get_claim_info, addressed by the on-chain plan id."""
        return self.get_claim_info(get_plan_by_global_id(self.db, global_plan_id).id, now)

    def claims_for_email(self, email: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Every beneficiary entry registered under an email address."""
        now = now or utcnow()
        if not email or not email.strip():
            raise ValidationError("Email required")
        threshold = self.config.PROOF_OF_LIFE_FAIL_THRESHOLD

        rows = self.db.query(Beneficiary).join(Plan).filter(
            Beneficiary.email_hash == hash_identity(email),
        ).order_by(Plan.id, Beneficiary.beneficiary_index).all()

        return [
            {
                "plan_id": b.plan.id,
                "global_plan_id": b.plan.global_plan_id,
                "plan_name": b.plan.name,
                "asset_type": b.plan.asset_type,
                "distribution_method": b.plan.distribution_method,
                "transfer_date": format_datetime_for_api(b.plan.transfer_date),
                "plan_status": b.plan.status,
                "beneficiary_index": b.beneficiary_index,
                "name": b.name,
                "relationship": b.relationship_label,
                "allocated_percentage": b.allocated_percentage,
                "allocated_amount": b.allocated_amount,
                "has_claimed": b.has_claimed,
                "claimed_at": format_datetime_for_api(b.claimed_at),
                "claimed_amount": b.claimed_amount,
                "is_claimable": (
                    not b.has_claimed and b.plan.is_lump_sum and is_plan_claimable(b.plan, now, threshold)
                ),
            }
            for b in rows
        ]
