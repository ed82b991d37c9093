"""
Plan lifecycle state machine.

    ACTIVE <-> PAUSED
    ACTIVE | PAUSED -> CANCELLED   (owner/admin, refunds escrow)
    ACTIVE | PAUSED -> EXPIRED     (scheduler, claim window elapsed)
    ACTIVE | PAUSED -> EXECUTED    (system, all funds released)

CANCELLED, EXPIRED and EXECUTED are terminal. Every transition appends an
activity row in the same transaction as the status change, so a failed
transition leaves the previous state and no log entry behind.
"""

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from inheritx.core.config import settings
from inheritx.core.errors import InvalidState, PartialClaimExists
from inheritx.core.timezone import utcnow
from inheritx.modules.distributions.locks import new_holder_id, plan_lock
from inheritx.modules.ledger.client import LedgerClient
from inheritx.modules.plans.models import (
    DistributionStatus,
    EscrowStatus,
    Plan,
    PlanStatus,
)
from inheritx.modules.plans.store import has_released_funds
from inheritx.shared.services.activity_log import record_activity

logger = logging.getLogger(__name__)


class PlanLifecycle:
    """Applies status transitions to plans."""

    def __init__(self, db: Session, ledger: LedgerClient, lock_ttl_seconds: Optional[int] = None):
        self.db = db
        self.ledger = ledger
        self.lock_ttl_seconds = lock_ttl_seconds or settings.PLAN_LOCK_TTL_SECONDS

    # --- owner / admin transitions (commit) ---

    def pause(self, plan: Plan, actor: str) -> Plan:
        return self._compare_and_set(plan, (PlanStatus.ACTIVE,), PlanStatus.PAUSED, actor, "PLAN_PAUSED")

    def resume(self, plan: Plan, actor: str) -> Plan:
        return self._compare_and_set(plan, (PlanStatus.PAUSED,), PlanStatus.ACTIVE, actor, "PLAN_RESUMED")

    def cancel(self, plan: Plan, actor: str) -> Plan:
        """
        Refund the escrow to the owner and mark the plan CANCELLED.

        Runs under the plan lock so it cannot interleave with a scheduler pass
        releasing a period of the same plan. The refund is confirmed on the
        ledger before anything is written.
        """
        self._require(plan, (PlanStatus.ACTIVE, PlanStatus.PAUSED), "cancel")
        if has_released_funds(plan):
            raise PartialClaimExists(f"Plan {plan.id} already released funds")

        with plan_lock(self.db, plan.id, self.lock_ttl_seconds, holder=new_holder_id("cancel")):
            # Re-read inside the lock; the scheduler may have moved it meanwhile
            self.db.refresh(plan)
            self._require(plan, (PlanStatus.ACTIVE, PlanStatus.PAUSED), "cancel")
            if has_released_funds(plan):
                raise PartialClaimExists(f"Plan {plan.id} already released funds")

            refund_tx = self.ledger.refund_escrow(plan.id)

            old_status = plan.status
            plan.status = PlanStatus.CANCELLED.value
            if plan.escrow is not None:
                plan.escrow.status = EscrowStatus.REFUNDED.value
                plan.escrow.refund_tx_hash = refund_tx
            for distribution in plan.distributions:
                if distribution.status != DistributionStatus.EXECUTED.value:
                    distribution.status = DistributionStatus.CANCELLED.value
            record_activity(
                self.db,
                actor=actor,
                activity_type="PLAN_CANCELLED",
                description=f"Plan cancelled; escrow refunded in {refund_tx}",
                metadata={"refundTxHash": refund_tx},
                plan_id=plan.id,
                old_status=old_status,
                new_status=plan.status,
            )
            self.db.commit()

        self.db.refresh(plan)
        logger.info(f"Plan {plan.id} cancelled by {actor} (refund {refund_tx})")
        return plan

    # --- system transitions (join the caller's transaction, no commit) ---

    def mark_executed(self, plan: Plan, actor: str = "system") -> bool:
        """
        Mark a plan EXECUTED once all of its funds have been released.

        Idempotent: returns False without side effects when already EXECUTED.
        """
        if plan.status == PlanStatus.EXECUTED.value:
            return False
        self._require(plan, (PlanStatus.ACTIVE, PlanStatus.PAUSED), "execute")
        old_status = plan.status
        plan.status = PlanStatus.EXECUTED.value
        plan.is_claimed_fully = True
        record_activity(
            self.db,
            actor=actor,
            activity_type="PLAN_EXECUTED",
            description="All plan funds released",
            plan_id=plan.id,
            old_status=old_status,
            new_status=plan.status,
        )
        logger.info(f"Plan {plan.id} executed")
        return True

    def expire(self, plan: Plan, actor: str = "scheduler", now: Optional[datetime] = None) -> Plan:
        """
        Close a lump-sum plan whose claim window elapsed, refunding what was never claimed.

        The caller must hold the plan lock and commit.
        """
        now = now or utcnow()
        self._require(plan, (PlanStatus.ACTIVE, PlanStatus.PAUSED), "expire")
        refund_tx = None
        if plan.escrow is not None and plan.escrow.remaining > 0:
            refund_tx = self.ledger.refund_escrow(plan.id)
            plan.escrow.status = EscrowStatus.REFUNDED.value
            plan.escrow.refund_tx_hash = refund_tx

        old_status = plan.status
        plan.status = PlanStatus.EXPIRED.value
        unclaimed = [b.beneficiary_index for b in plan.beneficiaries if not b.has_claimed]
        record_activity(
            self.db,
            actor=actor,
            activity_type="PLAN_EXPIRED",
            description=f"Claim window elapsed with {len(unclaimed)} unclaimed share(s)",
            metadata={"unclaimedBeneficiaries": unclaimed, "refundTxHash": refund_tx,
                      "expiredAt": now.isoformat()},
            plan_id=plan.id,
            old_status=old_status,
            new_status=plan.status,
        )
        logger.info(f"Plan {plan.id} expired; {len(unclaimed)} share(s) unclaimed")
        return plan

    # --- helpers ---

    def _require(self, plan: Plan, allowed: Sequence[PlanStatus], action: str) -> None:
        if plan.status not in {s.value for s in allowed}:
            raise InvalidState(f"Cannot {action} plan {plan.id} in status {plan.status}")

    def _compare_and_set(self, plan: Plan, expected: Sequence[PlanStatus], new: PlanStatus,
                         actor: str, activity_type: str) -> Plan:
        """Conditional status update: succeeds only if the row still holds an expected status."""
        self._require(plan, expected, activity_type.split("_")[-1].lower())
        old_status = plan.status
        updated = self.db.query(Plan).filter(
            Plan.id == plan.id,
            Plan.status.in_([s.value for s in expected]),
        ).update({"status": new.value, "updated_at": utcnow()}, synchronize_session=False)
        if not updated:
            self.db.rollback()
            self.db.refresh(plan)
            raise InvalidState(f"Plan {plan.id} changed status concurrently (now {plan.status})")

        record_activity(
            self.db,
            actor=actor,
            activity_type=activity_type,
            description=f"Plan status changed to {new.value}",
            plan_id=plan.id,
            old_status=old_status,
            new_status=new.value,
        )
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(plan)
        logger.info(f"Plan {plan.id}: {old_status} -> {new.value} by {actor}")
        return plan
