"""
Proof of Life Monitor

Periodically asks plan owners to confirm they are still active. Each prompt
carries a fresh single-use token; a prompt left unanswered until the next one
is due counts as a missed check-in. Once misses reach the threshold on a plan
with early claim enabled, beneficiaries may claim before the transfer date.

Claimability is computed from the current row every time it is asked for and
never stored.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from inheritx.core.config import Settings, settings as default_settings
from inheritx.core.errors import InvalidVerificationToken, ValidationError
from inheritx.core.timezone import utcnow
from inheritx.modules.plans.models import DistributionMethod, Plan, PlanStatus
from inheritx.shared.services.activity_log import record_activity
from inheritx.shared.services.notifications import NotificationService

logger = logging.getLogger(__name__)


def is_inactivity_threshold_exceeded(plan: Plan, threshold: Optional[int] = None) -> bool:
    """True when missed check-ins reached the threshold on a plan that allows early claim."""
    if threshold is None:
        threshold = default_settings.PROOF_OF_LIFE_FAIL_THRESHOLD
    if plan.distribution_method != DistributionMethod.LUMP_SUM.value:
        return False
    if not (plan.proof_of_life_enabled and plan.early_claim_enabled):
        return False
    return (plan.verification_fail_count or 0) >= threshold


def is_plan_claimable(plan: Plan, now: Optional[datetime] = None, threshold: Optional[int] = None) -> bool:
    """ACTIVE and either the transfer date has passed or the inactivity failsafe tripped."""
    now = now or utcnow()
    if plan.status != PlanStatus.ACTIVE.value:
        return False
    return plan.transfer_date <= now or is_inactivity_threshold_exceeded(plan, threshold)


def seconds_until_claimable(plan: Plan, now: Optional[datetime] = None, threshold: Optional[int] = None) -> int:
    now = now or utcnow()
    if is_plan_claimable(plan, now, threshold):
        return 0
    return max(0, int((plan.transfer_date - now).total_seconds()))


class ProofOfLifeMonitor:
    """Sends check-in prompts and tracks the owner's responses."""

    def __init__(self, db: Session, notifier: NotificationService, config: Optional[Settings] = None):
        self.db = db
        self.notifier = notifier
        self.config = config or default_settings

    def send_due_prompts(self, now: Optional[datetime] = None) -> int:
        """
        Send a check-in prompt to every owner whose last prompt is older than the interval.

        Returns the number of prompts sent. Each plan is committed on its own so
        one bad address does not hold back the rest.
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.PROOF_OF_LIFE_INTERVAL_DAYS)

        plans = self.db.query(Plan).filter(
            Plan.status == PlanStatus.ACTIVE.value,
            Plan.proof_of_life_enabled.is_(True),
            Plan.distribution_method == DistributionMethod.LUMP_SUM.value,
            (Plan.last_verification_sent.is_(None)) | (Plan.last_verification_sent <= cutoff),
        ).order_by(Plan.id).all()

        sent = 0
        for plan in plans:
            try:
                if self._prompt_unanswered(plan):
                    self.record_missed_check_in(plan, now=now, commit=False)

                token = secrets.token_urlsafe(32)
                plan.verification_token = token
                plan.last_verification_sent = now
                record_activity(
                    self.db,
                    actor="system",
                    activity_type="PROOF_OF_LIFE_SENT",
                    description="Proof of life prompt sent to plan owner",
                    metadata={"failCount": plan.verification_fail_count},
                    plan_id=plan.id,
                )
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to prepare check-in prompt for plan {plan.id}: {e}", exc_info=True)
                continue

            if self.notifier.send_check_in_prompt(plan.owner_email, token, plan_name=plan.name):
                sent += 1
            else:
                logger.warning(f"Check-in prompt for plan {plan.id} could not be delivered")

        if plans:
            logger.info(f"Proof of life: {sent}/{len(plans)} prompt(s) sent")
        return sent

    def record_check_in(self, plan: Plan, actor: str, now: Optional[datetime] = None) -> Plan:
        """Owner confirmed activity: reset the miss counter and consume the outstanding token."""
        now = now or utcnow()
        if not plan.proof_of_life_enabled:
            raise ValidationError(f"Plan {plan.id} does not have proof of life enabled")

        previous_failures = plan.verification_fail_count
        plan.verification_fail_count = 0
        plan.last_verification_at = now
        plan.verification_token = None
        record_activity(
            self.db,
            actor=actor,
            activity_type="PROOF_OF_LIFE_CONFIRMED",
            description="Plan owner confirmed proof of life",
            metadata={"previousFailCount": previous_failures},
            plan_id=plan.id,
        )
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(plan)
        logger.info(f"Plan {plan.id}: proof of life confirmed")
        return plan

    def confirm_token(self, token: str, now: Optional[datetime] = None) -> Plan:
        """Confirm a check-in from the link in a prompt. Tokens are single use."""
        if not token:
            raise InvalidVerificationToken("Empty verification token")
        plan = self.db.query(Plan).filter(Plan.verification_token == token).first()
        if plan is None:
            raise InvalidVerificationToken("Unknown or already used verification token")
        return self.record_check_in(plan, actor=plan.owner_address, now=now)

    def record_missed_check_in(self, plan: Plan, now: Optional[datetime] = None, commit: bool = True) -> Plan:
        now = now or utcnow()
        was_exceeded = is_inactivity_threshold_exceeded(plan, self.config.PROOF_OF_LIFE_FAIL_THRESHOLD)
        plan.verification_fail_count = (plan.verification_fail_count or 0) + 1
        # The unanswered token is dead once the miss is counted
        plan.verification_token = None
        record_activity(
            self.db,
            actor="system",
            activity_type="PROOF_OF_LIFE_MISSED",
            description=f"Proof of life check-in missed ({plan.verification_fail_count} total)",
            metadata={"failCount": plan.verification_fail_count},
            plan_id=plan.id,
        )
        now_exceeded = is_inactivity_threshold_exceeded(plan, self.config.PROOF_OF_LIFE_FAIL_THRESHOLD)
        if now_exceeded and not was_exceeded:
            record_activity(
                self.db,
                actor="system",
                activity_type="EARLY_CLAIM_UNLOCKED",
                description="Inactivity threshold reached; beneficiaries may claim early",
                metadata={"failCount": plan.verification_fail_count, "at": now.isoformat()},
                plan_id=plan.id,
            )
            logger.warning(f"Plan {plan.id}: inactivity threshold reached, early claim unlocked")

        if commit:
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        return plan

    @staticmethod
    def _prompt_unanswered(plan: Plan) -> bool:
        if plan.last_verification_sent is None:
            return False
        return plan.last_verification_at is None or plan.last_verification_at < plan.last_verification_sent
