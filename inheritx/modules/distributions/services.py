"""
Distribution Scheduler

Each pass finds plans with work due and fans them out to a pool of workers.
A worker owns its own database session, takes the plan lock, re-reads the plan
inside the lock and then does one of:

- lump sum: opens the claim window by sending each beneficiary their claim code
- periodic: releases the earliest due period to every beneficiary, in order
- periodic, upcoming: announces a period inside the notice window
- expiry: closes a lump-sum plan whose claim window elapsed

Ledger failures and refused overdraws count against the item; once
MAX_DISTRIBUTION_ATTEMPTS is reached the item is marked FAILED and an operator
alert goes out.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from inheritx.core.config import Settings, settings as default_settings
from inheritx.core.errors import (
    CipherError,
    DistributionNotFound,
    InvalidAmount,
    InvalidState,
    ItemTimeout,
    LedgerError,
    PlanLocked,
)
from inheritx.core.timezone import utcnow
from inheritx.modules.claims.cipher import ClaimCodeCipher
from inheritx.modules.distributions.locks import new_holder_id, plan_lock
from inheritx.modules.ledger.client import LedgerClient
from inheritx.modules.plans.allocation import split_amount
from inheritx.modules.plans.lifecycle import PlanLifecycle
from inheritx.modules.plans.models import (
    Beneficiary,
    Distribution,
    DistributionRelease,
    DistributionStatus,
    Plan,
    PlanStatus,
)
from inheritx.modules.plans.store import (
    check_escrow_headroom,
    find_due_plan_ids,
    next_open_distribution,
    record_escrow_release,
)
from inheritx.modules.proof_of_life.services import is_plan_claimable
from inheritx.shared.services.activity_log import record_activity
from inheritx.shared.services.notifications import NotificationService, format_base_units

logger = logging.getLogger(__name__)

# Outcomes reported by process_plan
OUTCOME_LOCKED = "locked"
OUTCOME_SKIPPED = "skipped"
OUTCOME_PROCESSED = "processed"
OUTCOME_EXPIRED = "expired"
OUTCOME_FAILED = "failed"


@dataclass
class PassResult:
    started_at: datetime
    due: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: int = 0
    abandoned: int = 0

    def count(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def to_dict(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "outcomes": dict(self.outcomes),
            "errors": self.errors,
            "abandoned": self.abandoned,
        }


class DistributionScheduler:
    """Runs distribution passes. Stateless between passes; all state lives in the database."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger: LedgerClient,
        notifier: NotificationService,
        cipher: ClaimCodeCipher,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.notifier = notifier
        self.cipher = cipher
        self.config = config or default_settings

    # --- pass orchestration ---

    def run_pass(self, now: Optional[datetime] = None) -> PassResult:
        """Scan for due plans and process them on the worker pool within the pass deadline."""
        now = now or utcnow()
        result = PassResult(started_at=now)

        db = self.session_factory()
        try:
            plan_ids = find_due_plan_ids(db, now, self.config)
        finally:
            db.close()

        result.due = len(plan_ids)
        if not plan_ids:
            logger.debug("Distribution pass: nothing due")
            return result

        logger.info(f"Distribution pass: {len(plan_ids)} plan(s) due")
        executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.SCHEDULER_WORKERS),
            thread_name_prefix="distribution-worker",
        )
        try:
            futures = {executor.submit(self.process_plan, plan_id, now): plan_id for plan_id in plan_ids}
            done, not_done = wait(futures, timeout=self.config.PASS_DEADLINE_SECONDS)

            for future in done:
                plan_id = futures[future]
                try:
                    result.count(future.result())
                except Exception as e:
                    result.errors += 1
                    logger.error(f"Unexpected error processing plan {plan_id}: {e}", exc_info=True)

            for future in not_done:
                future.cancel()
                result.abandoned += 1
                logger.warning(f"Pass deadline reached; plan {futures[future]} left for the next pass")
        finally:
            # Running workers finish in the background and release their locks
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(f"Distribution pass finished: {result.to_dict()}")
        return result

    def process_plan(self, plan_id: int, now: Optional[datetime] = None) -> str:
        """Process one plan under its lock. Returns an outcome string."""
        now = now or utcnow()
        db = self.session_factory()
        try:
            with plan_lock(db, plan_id, self.config.PLAN_LOCK_TTL_SECONDS, holder=new_holder_id("scheduler")):
                plan = db.get(Plan, plan_id)
                if plan is None:
                    return OUTCOME_SKIPPED
                deadline = time.monotonic() + self.config.ITEM_TIMEOUT_SECONDS

                if self._claim_window_elapsed(plan, now):
                    return self._expire(db, plan, now)
                if plan.status != PlanStatus.ACTIVE.value:
                    return OUTCOME_SKIPPED
                if plan.is_lump_sum:
                    return self._open_claim_window(db, plan, now, deadline)
                return self._process_periods(db, plan, now, deadline)
        except PlanLocked:
            logger.debug(f"Plan {plan_id} is held by another worker, skipping")
            return OUTCOME_LOCKED
        finally:
            db.close()

    # --- lump sum ---

    def _open_claim_window(self, db: Session, plan: Plan, now: datetime, deadline: float) -> str:
        if not is_plan_claimable(plan, now, self.config.PROOF_OF_LIFE_FAIL_THRESHOLD):
            return OUTCOME_SKIPPED

        outcome = OUTCOME_PROCESSED
        for beneficiary in plan.beneficiaries:
            if beneficiary.has_claimed or beneficiary.notification_sent:
                continue
            if beneficiary.notification_attempts >= self.config.MAX_DISTRIBUTION_ATTEMPTS:
                continue
            if time.monotonic() > deadline:
                logger.warning(f"Plan {plan.id}: item timeout while sending claim codes")
                return OUTCOME_FAILED

            if not self._send_claim_code(plan, beneficiary):
                outcome = OUTCOME_FAILED
                beneficiary.notification_attempts += 1
                if beneficiary.notification_attempts >= self.config.MAX_DISTRIBUTION_ATTEMPTS:
                    self._alert(
                        "Claim code delivery failed",
                        f"Plan {plan.id} beneficiary {beneficiary.beneficiary_index}: "
                        f"gave up after {beneficiary.notification_attempts} attempts",
                    )
                db.commit()
                continue

            beneficiary.notification_sent = True
            beneficiary.notification_sent_at = now
            beneficiary.notification_attempts += 1
            record_activity(
                db,
                actor="scheduler",
                activity_type="CLAIM_CODE_SENT",
                description=f"Claim code sent to beneficiary {beneficiary.beneficiary_index}",
                metadata={"beneficiaryIndex": beneficiary.beneficiary_index},
                plan_id=plan.id,
            )
            # Commit per beneficiary so a crash never re-sends a delivered code
            db.commit()

        return outcome

    def _send_claim_code(self, plan: Plan, beneficiary: Beneficiary) -> bool:
        try:
            code = self.cipher.decrypt(beneficiary.claim_code_encrypted)
        except CipherError:
            logger.error(f"Plan {plan.id}: claim code for beneficiary {beneficiary.beneficiary_index} "
                         "could not be decrypted")
            return False
        return self.notifier.send_claim_code(
            beneficiary.email,
            plan.id,
            code,
            beneficiary_name=beneficiary.name,
            plan_name=plan.name,
            amount=format_base_units(beneficiary.allocated_amount_value, plan.asset_type),
            asset_type=plan.asset_type,
        )

    # --- periodic ---

    def _process_periods(self, db: Session, plan: Plan, now: datetime, deadline: float) -> str:
        notice_horizon = now + timedelta(days=self.config.DISTRIBUTION_NOTICE_DAYS)
        outcome = OUTCOME_SKIPPED

        # Periods run strictly in order; a missed pass catches up on the next one
        while True:
            distribution = next_open_distribution(plan)
            if distribution is None:
                return outcome
            if distribution.status == DistributionStatus.FAILED.value:
                logger.debug(f"Plan {plan.id}: period {distribution.period_number} FAILED, later periods held")
                return outcome

            if distribution.scheduled_date > now:
                if distribution.status == DistributionStatus.PENDING.value and \
                        distribution.scheduled_date <= notice_horizon:
                    self._send_notice(db, plan, distribution, now)
                    return OUTCOME_PROCESSED
                return outcome

            if not self._release_period(db, plan, distribution, now, deadline):
                return OUTCOME_FAILED
            outcome = OUTCOME_PROCESSED

    def _shares(self, plan: Plan, distribution: Distribution) -> List[int]:
        return split_amount(distribution.amount_value, [b.allocated_percentage for b in plan.beneficiaries])

    def _send_notice(self, db: Session, plan: Plan, distribution: Distribution, now: datetime) -> None:
        for beneficiary, share in zip(plan.beneficiaries, self._shares(plan, distribution)):
            self.notifier.send_distribution_notice(
                beneficiary.email,
                plan.name,
                plan.distribution_method,
                distribution.period_number,
                format_base_units(share, plan.asset_type),
                plan.asset_type,
            )
        distribution.status = DistributionStatus.NOTIFIED.value
        distribution.notified_at = now
        record_activity(
            db,
            actor="scheduler",
            activity_type="DISTRIBUTION_NOTIFIED",
            description=f"Beneficiaries notified of period {distribution.period_number}",
            metadata={"periodNumber": distribution.period_number,
                      "scheduledDate": distribution.scheduled_date.isoformat()},
            plan_id=plan.id,
        )
        db.commit()

    def _release_period(self, db: Session, plan: Plan, distribution: Distribution,
                        now: datetime, deadline: float) -> bool:
        """
        Release one period to every beneficiary. Returns True once the period is EXECUTED.

        Each beneficiary release is committed as soon as the ledger confirms it,
        so a retried period only pays the beneficiaries it has not paid yet.
        """
        already_paid = {r.beneficiary_index for r in distribution.releases}
        last_tx = distribution.tx_hash
        try:
            for beneficiary, share in zip(plan.beneficiaries, self._shares(plan, distribution)):
                if beneficiary.beneficiary_index in already_paid or share == 0:
                    continue
                if time.monotonic() > deadline:
                    raise ItemTimeout(f"Plan {plan.id} period {distribution.period_number} overran its budget")

                # Overdraw is refused before any money moves
                check_escrow_headroom(plan, share)
                last_tx = self.ledger.release_escrow(plan.id, beneficiary.beneficiary_index, share)
                if not self._record_release(db, plan, distribution, beneficiary.beneficiary_index, share, last_tx):
                    return False
        except (LedgerError, InvalidAmount) as e:
            db.rollback()
            self._record_failed_attempt(db, plan, distribution, e)
            return False

        distribution.status = DistributionStatus.EXECUTED.value
        distribution.executed_at = now
        distribution.tx_hash = last_tx
        distribution.last_error = None
        record_activity(
            db,
            actor="scheduler",
            activity_type="DISTRIBUTION_EXECUTED",
            description=f"Period {distribution.period_number} released to {len(plan.beneficiaries)} beneficiaries",
            metadata={"periodNumber": distribution.period_number, "amount": distribution.amount,
                      "txHash": last_tx},
            plan_id=plan.id,
        )
        if next_open_distribution(plan) is None:
            PlanLifecycle(db, self.ledger, self.config.PLAN_LOCK_TTL_SECONDS).mark_executed(plan, actor="scheduler")
        db.commit()
        logger.info(f"Plan {plan.id}: period {distribution.period_number} executed")

        for beneficiary, share in zip(plan.beneficiaries, self._shares(plan, distribution)):
            self.notifier.send_distribution_notice(
                beneficiary.email,
                plan.name,
                plan.distribution_method,
                distribution.period_number,
                format_base_units(share, plan.asset_type),
                plan.asset_type,
                executed=True,
            )
        return True

    def _record_release(self, db: Session, plan: Plan, distribution: Distribution,
                        beneficiary_index: int, share: int, tx_hash: str) -> bool:
        """
        Persist a release the ledger already confirmed. Returns False when the
        bookkeeping failed; the transfer itself is still recorded so no later
        pass pays it again, and the failure counts against the period.
        """
        try:
            distribution.releases.append(DistributionRelease(
                beneficiary_index=beneficiary_index,
                amount=str(share),
                tx_hash=tx_hash,
            ))
            record_escrow_release(plan, share)
            db.commit()
            return True
        except Exception as e:
            db.rollback()
            logger.error(f"Plan {plan.id}: release {tx_hash} to beneficiary {beneficiary_index} "
                         f"confirmed but not recorded: {e}", exc_info=True)
            db.add(DistributionRelease(
                distribution_id=distribution.id,
                beneficiary_index=beneficiary_index,
                amount=str(share),
                tx_hash=tx_hash,
            ))
            self._alert(
                "Escrow accounting out of sync",
                f"Plan {plan.id} period {distribution.period_number}: release {tx_hash} of {share} "
                f"to beneficiary {beneficiary_index} is not reflected in the escrow totals",
            )
            self._record_failed_attempt(db, plan, distribution, e)
            return False

    def _record_failed_attempt(self, db: Session, plan: Plan, distribution: Distribution, error: Exception) -> None:
        distribution.attempts += 1
        distribution.last_error = str(error)[:500]
        exhausted = distribution.attempts >= self.config.MAX_DISTRIBUTION_ATTEMPTS
        if exhausted:
            distribution.status = DistributionStatus.FAILED.value
        record_activity(
            db,
            actor="scheduler",
            activity_type="DISTRIBUTION_FAILED" if exhausted else "DISTRIBUTION_RETRY",
            description=f"Period {distribution.period_number} release failed (attempt {distribution.attempts})",
            metadata={"periodNumber": distribution.period_number, "attempts": distribution.attempts,
                      "error": distribution.last_error},
            plan_id=plan.id,
        )
        db.commit()
        logger.warning(f"Plan {plan.id} period {distribution.period_number} attempt "
                       f"{distribution.attempts} failed: {error}")
        if exhausted:
            self._alert(
                "Distribution failed",
                f"Plan {plan.id} period {distribution.period_number} failed after "
                f"{distribution.attempts} attempts: {distribution.last_error}",
            )

    # --- expiry ---

    def _claim_window_elapsed(self, plan: Plan, now: datetime) -> bool:
        window = self.config.CLAIM_WINDOW_DAYS
        if window <= 0 or not plan.is_lump_sum or plan.is_claimed_fully:
            return False
        if plan.status not in (PlanStatus.ACTIVE.value, PlanStatus.PAUSED.value):
            return False
        return plan.transfer_date <= now - timedelta(days=window)

    def _expire(self, db: Session, plan: Plan, now: datetime) -> str:
        try:
            PlanLifecycle(db, self.ledger, self.config.PLAN_LOCK_TTL_SECONDS).expire(plan, now=now)
            db.commit()
        except LedgerError as e:
            db.rollback()
            logger.warning(f"Plan {plan.id}: refund on expiry failed, will retry next pass: {e}")
            return OUTCOME_FAILED
        return OUTCOME_EXPIRED

    def _alert(self, title: str, message: str) -> None:
        try:
            self.notifier.send_operator_alert(title, message)
        except Exception as e:
            logger.error(f"Failed to send operator alert '{title}': {e}", exc_info=True)


def retry_distribution(db: Session, distribution_id: int, actor: str) -> Distribution:
    """Operator action: put a FAILED period back in the queue with a fresh attempt budget."""
    distribution = db.get(Distribution, distribution_id)
    if distribution is None:
        raise DistributionNotFound(f"Distribution {distribution_id} not found")
    if distribution.status != DistributionStatus.FAILED.value:
        raise InvalidState(f"Distribution {distribution_id} is {distribution.status}, not FAILED")
    if distribution.plan.status != PlanStatus.ACTIVE.value:
        raise InvalidState(f"Plan {distribution.plan_id} is {distribution.plan.status}")

    distribution.status = DistributionStatus.PENDING.value
    distribution.attempts = 0
    distribution.last_error = None
    record_activity(
        db,
        actor=actor,
        activity_type="DISTRIBUTION_RETRY_REQUESTED",
        description=f"Period {distribution.period_number} re-queued by operator",
        metadata={"distributionId": distribution.id, "periodNumber": distribution.period_number},
        plan_id=distribution.plan_id,
        old_status=DistributionStatus.FAILED.value,
        new_status=DistributionStatus.PENDING.value,
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(distribution)
    logger.info(f"Distribution {distribution_id} re-queued by {actor}")
    return distribution
