"""
Plan persistence service.

Creates plans together with their beneficiaries, distribution schedule and
escrow record, and exposes the queries the scheduler and claim flow run.
Invariants are enforced here, at the write boundary, not only in the schema:
- beneficiary allocations sum to 10000 bps
- periodic percentages divide 100 and the full period set is materialized up front
- period amounts sum to the escrowed amount (remainder on the final period)
- releases never exceed the escrowed amount
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session

from inheritx.core.config import Settings, settings as default_settings
from inheritx.core.errors import (
    BeneficiaryNotFound,
    EscrowOverdraw,
    InvalidAmount,
    InvalidSchedule,
    PlanNotFound,
    ValidationError,
)
from inheritx.core.timezone import to_naive_utc, utcnow
from inheritx.modules.claims.cipher import (
    ClaimCodeCipher,
    beneficiary_hashes,
    generate_claim_code,
    is_valid_claim_code,
    normalize_claim_code,
)
from inheritx.modules.ledger.client import LedgerClient
from inheritx.modules.plans.allocation import (
    TOTAL_BASIS_POINTS,
    period_count,
    split_amount,
    split_evenly,
    validate_percentages,
)
from inheritx.modules.plans.models import (
    AssetType,
    Beneficiary,
    Distribution,
    DistributionMethod,
    DistributionStatus,
    EscrowRecord,
    EscrowStatus,
    OPEN_DISTRIBUTION_STATUSES,
    Plan,
    PlanStatus,
)
from inheritx.shared.services.activity_log import get_creation_fee_bps, record_activity

logger = logging.getLogger(__name__)


PERIOD_STEPS = {
    DistributionMethod.MONTHLY.value: relativedelta(months=1),
    DistributionMethod.QUARTERLY.value: relativedelta(months=3),
    DistributionMethod.YEARLY.value: relativedelta(years=1),
}


@dataclass
class BeneficiaryInput:
    name: str
    email: str
    relationship: str
    allocated_percentage: int  # basis points
    claim_code: Optional[str] = None


@dataclass
class PlanInput:
    owner_address: str
    name: str
    description: str
    asset_type: str
    asset_amount: str
    asset_amount_wei: str
    distribution_method: str
    transfer_date: datetime
    beneficiaries: List[BeneficiaryInput]
    periodic_percentage: Optional[int] = None
    end_date: Optional[datetime] = None
    owner_email: Optional[str] = None
    proof_of_life_enabled: bool = False
    early_claim_enabled: bool = False
    notify_beneficiaries: bool = False
    global_plan_id: Optional[int] = None
    user_plan_id: Optional[int] = None
    tx_hash: Optional[str] = None


@dataclass
class CreatedPlan:
    """A freshly created plan plus the plaintext claim codes, returned exactly once."""
    plan: Plan
    claim_codes: Dict[int, str] = field(default_factory=dict)


def parse_base_units(value: str) -> int:
    """Parse a non-negative integer amount given as a decimal string."""
    text = str(value).strip()
    if not (text.isascii() and text.isdigit()):
        raise InvalidAmount(f"Amount {value!r} is not a non-negative integer")
    return int(text)


def build_distribution_schedule(
    method: str,
    start: datetime,
    percentage: int,
    total: int,
) -> List[Tuple[int, datetime, int]]:
    """
    Materialize every period of a periodic plan.

    Returns (period_number, scheduled_date, amount) tuples. Dates step by
    calendar months/years from start; amounts split total evenly with the
    rounding remainder on the final period.
    """
    if method not in PERIOD_STEPS:
        raise InvalidSchedule(f"{method} is not a periodic distribution method")
    periods = period_count(percentage)
    step = PERIOD_STEPS[method]
    amounts = split_evenly(total, periods)
    return [
        (number, start + step * (number - 1), amounts[number - 1])
        for number in range(1, periods + 1)
    ]


def _validate_plan_input(data: PlanInput) -> int:
    """Validate everything that does not need the database. Returns the amount in base units."""
    if data.asset_type not in {a.value for a in AssetType}:
        raise ValidationError(f"Unknown asset type {data.asset_type!r}")
    if data.distribution_method not in {m.value for m in DistributionMethod}:
        raise InvalidSchedule(f"Unknown distribution method {data.distribution_method!r}")
    if not data.name or not data.name.strip():
        raise ValidationError("Plan name is required")

    amount = parse_base_units(data.asset_amount_wei)
    if amount <= 0:
        raise InvalidAmount("Plan amount must be positive")

    validate_percentages([b.allocated_percentage for b in data.beneficiaries])

    if data.distribution_method == DistributionMethod.LUMP_SUM.value:
        if data.periodic_percentage is not None:
            raise InvalidSchedule("Lump-sum plans do not take a periodic percentage")
    else:
        if data.periodic_percentage is None:
            raise InvalidSchedule("Periodic plans require a percentage per period")
        period_count(data.periodic_percentage)

    for b in data.beneficiaries:
        if b.claim_code is not None and not is_valid_claim_code(b.claim_code):
            raise ValidationError("Claim codes must be 6 alphanumeric characters")
        if not (b.name.strip() and b.email.strip() and b.relationship.strip()):
            raise ValidationError("Beneficiary name, email and relationship are required")

    if data.early_claim_enabled and not data.proof_of_life_enabled:
        raise ValidationError("Early claim requires proof of life")
    return amount


def create_plan(
    db: Session,
    data: PlanInput,
    ledger: LedgerClient,
    cipher: ClaimCodeCipher,
    now: Optional[datetime] = None,
) -> CreatedPlan:
    """
    Create a plan after locking its escrow on the ledger.

    The plan rows are flushed to obtain an id, the ledger lock is attempted,
    and only then is the transaction committed. A validation or ledger failure
    rolls everything back, so nothing is partially applied.
    """
    now = now or utcnow()
    amount = _validate_plan_input(data)
    transfer_date = to_naive_utc(data.transfer_date)
    is_lump_sum = data.distribution_method == DistributionMethod.LUMP_SUM.value

    schedule = []
    end_date = None
    if not is_lump_sum:
        schedule = build_distribution_schedule(
            data.distribution_method, transfer_date, data.periodic_percentage, amount
        )
        end_date = schedule[-1][1]
        requested_end = to_naive_utc(data.end_date)
        if requested_end is not None and requested_end < end_date:
            raise InvalidSchedule(
                f"End date {requested_end.isoformat()} is before the last period {end_date.isoformat()}"
            )

    fee_bps = get_creation_fee_bps(db)
    fee_amount = amount * fee_bps // TOTAL_BASIS_POINTS

    plan = Plan(
        global_plan_id=data.global_plan_id,
        user_plan_id=data.user_plan_id,
        tx_hash=data.tx_hash,
        owner_address=data.owner_address,
        owner_email=data.owner_email,
        name=data.name.strip(),
        description=data.description,
        asset_type=data.asset_type,
        asset_amount=data.asset_amount,
        asset_amount_wei=str(amount),
        distribution_method=data.distribution_method,
        transfer_date=transfer_date,
        periodic_percentage=data.periodic_percentage,
        end_date=end_date,
        # Proof of life only applies to lump-sum plans
        proof_of_life_enabled=data.proof_of_life_enabled and is_lump_sum,
        early_claim_enabled=data.early_claim_enabled and is_lump_sum,
        verification_fail_count=0,
        notify_beneficiaries=data.notify_beneficiaries,
        status=PlanStatus.ACTIVE.value,
        is_claimed_fully=False,
    )

    claim_codes: Dict[int, str] = {}
    allocated = split_amount(amount, [b.allocated_percentage for b in data.beneficiaries])
    for index, (b, allocated_amount) in enumerate(zip(data.beneficiaries, allocated), start=1):
        code = normalize_claim_code(b.claim_code) if b.claim_code else generate_claim_code()
        hashes = beneficiary_hashes(b.name, b.email, b.relationship, code)
        claim_codes[index] = code
        plan.beneficiaries.append(Beneficiary(
            beneficiary_index=index,
            name=b.name.strip(),
            email=b.email.strip(),
            relationship_label=b.relationship.strip(),
            name_hash=hashes.name_hash,
            email_hash=hashes.email_hash,
            relationship_hash=hashes.relationship_hash,
            combined_hash=hashes.combined_hash,
            allocated_percentage=b.allocated_percentage,
            allocated_amount=str(allocated_amount),
            claim_code_encrypted=cipher.encrypt(code),
            claim_code_hash=hashes.claim_code_hash,
            has_claimed=False,
            notification_sent=False,
            notification_attempts=0,
        ))

    for number, scheduled_date, period_amount in schedule:
        plan.distributions.append(Distribution(
            period_number=number,
            amount=str(period_amount),
            scheduled_date=scheduled_date,
            status=DistributionStatus.PENDING.value,
            attempts=0,
        ))

    plan.escrow = EscrowRecord(
        amount_locked=str(amount),
        fee_bps=fee_bps,
        fee_amount=str(fee_amount),
        locked_at=now,
        release_conditions_count=len(data.beneficiaries) if is_lump_sum else len(schedule),
        released_amount="0",
        status=EscrowStatus.LOCKED.value,
    )

    try:
        db.add(plan)
        db.flush()
        # Write-ahead on the ledger; the rows only commit once the lock is confirmed
        plan.escrow.lock_tx_hash = ledger.lock_escrow(plan.id, plan.asset_type, amount + fee_amount)
        record_activity(
            db,
            actor=data.owner_address,
            activity_type="PLAN_CREATED",
            description=f"Created plan \"{plan.name}\" with {len(plan.beneficiaries)} beneficiaries",
            metadata={
                "assetType": plan.asset_type,
                "assetAmount": plan.asset_amount,
                "distributionMethod": plan.distribution_method,
                "beneficiaryCount": len(plan.beneficiaries),
                "feeBps": fee_bps,
            },
            plan_id=plan.id,
            new_status=plan.status,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(plan)
    logger.info(
        f"Plan {plan.id} created for {plan.owner_address}: {plan.distribution_method}, "
        f"{len(plan.beneficiaries)} beneficiaries, {len(schedule)} periods"
    )
    return CreatedPlan(plan=plan, claim_codes=claim_codes)


def get_plan(db: Session, plan_id: int) -> Plan:
    plan = db.get(Plan, plan_id)
    if plan is None:
        raise PlanNotFound(f"Plan {plan_id} not found")
    return plan


def get_plan_by_global_id(db: Session, global_plan_id: int) -> Plan:
    plan = db.query(Plan).filter(Plan.global_plan_id == global_plan_id).first()
    if plan is None:
        raise PlanNotFound(f"Plan with global id {global_plan_id} not found")
    return plan


def get_owned_plan(db: Session, plan_id: int, owner_address: str) -> Plan:
    """Fetch a plan only if it belongs to owner; unknown and foreign plans look the same."""
    plan = db.get(Plan, plan_id)
    if plan is None or plan.owner_address.lower() != owner_address.lower():
        raise PlanNotFound(f"Plan {plan_id} not found for owner")
    return plan


def list_plans(db: Session, owner_address: Optional[str] = None, status: Optional[str] = None,
               limit: int = 100, offset: int = 0) -> List[Plan]:
    query = db.query(Plan)
    if owner_address:
        query = query.filter(Plan.owner_address == owner_address)
    if status:
        query = query.filter(Plan.status == status)
    return query.order_by(Plan.created_at.desc(), Plan.id.desc()).offset(offset).limit(limit).all()


def get_beneficiary(db: Session, plan_id: int, beneficiary_index: int) -> Beneficiary:
    beneficiary = db.query(Beneficiary).filter(
        Beneficiary.plan_id == plan_id,
        Beneficiary.beneficiary_index == beneficiary_index,
    ).first()
    if beneficiary is None:
        raise BeneficiaryNotFound(f"Beneficiary {beneficiary_index} not found on plan {plan_id}")
    return beneficiary


def attach_chain_ids(db: Session, plan: Plan, global_plan_id: int, user_plan_id: int, tx_hash: str,
                     actor: str) -> Plan:
    """Record the on-chain identifiers once the contract call is confirmed."""
    plan.global_plan_id = global_plan_id
    plan.user_plan_id = user_plan_id
    plan.tx_hash = tx_hash
    record_activity(
        db,
        actor=actor,
        activity_type="PLAN_UPDATED",
        description=f"Plan confirmed on-chain with transaction {tx_hash}",
        metadata={"globalPlanId": global_plan_id, "userPlanId": user_plan_id, "txHash": tx_hash},
        plan_id=plan.id,
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(plan)
    return plan


def check_escrow_headroom(plan: Plan, amount: int) -> int:
    """
    Return the released total after amount leaves escrow. Raises EscrowOverdraw
    instead of letting total releases exceed the locked amount.
    """
    escrow = plan.escrow
    if escrow is None:
        raise InvalidAmount(f"Plan {plan.id} has no escrow record")
    if amount < 0:
        raise InvalidAmount("Release amount cannot be negative")
    released = int(escrow.released_amount) + amount
    if released > int(escrow.amount_locked):
        raise EscrowOverdraw(
            f"Plan {plan.id}: releasing {amount} would bring total to {released} "
            f"of {escrow.amount_locked} locked"
        )
    return released


def record_escrow_release(plan: Plan, amount: int) -> None:
    """Account for amount leaving escrow."""
    escrow = plan.escrow
    released = check_escrow_headroom(plan, amount)
    escrow.released_amount = str(released)
    if released == int(escrow.amount_locked):
        escrow.status = EscrowStatus.RELEASED.value


def has_released_funds(plan: Plan) -> bool:
    """True once any beneficiary claimed or any period paid out."""
    if any(b.has_claimed for b in plan.beneficiaries):
        return True
    return any(d.status == DistributionStatus.EXECUTED.value or d.releases for d in plan.distributions)


def next_open_distribution(plan: Plan) -> Optional[Distribution]:
    """
    The earliest period that has not reached a final state.

    A FAILED period is returned too: it gates every later period until an
    operator retries it.
    """
    for distribution in plan.distributions:
        if distribution.status not in (DistributionStatus.EXECUTED.value, DistributionStatus.CANCELLED.value):
            return distribution
    return None


def find_due_plan_ids(db: Session, now: datetime, config: Optional[Settings] = None) -> List[int]:
    """
    Ids of plans with scheduler work due at now.

    - ACTIVE lump-sum plans past their transfer date (or with early claim
      unlocked) that still have beneficiaries to notify
    - ACTIVE periodic plans with an open period due, or inside the notice window
    - lump-sum plans past their claim window (expiry)
    """
    config = config or default_settings
    notice_horizon = now + timedelta(days=config.DISTRIBUTION_NOTICE_DAYS)
    early_claim_unlocked = and_(
        Plan.proof_of_life_enabled.is_(True),
        Plan.early_claim_enabled.is_(True),
        Plan.verification_fail_count >= config.PROOF_OF_LIFE_FAIL_THRESHOLD,
    )
    pending_notice = exists().where(and_(
        Beneficiary.plan_id == Plan.id,
        Beneficiary.has_claimed.is_(False),
        Beneficiary.notification_sent.is_(False),
        Beneficiary.notification_attempts < config.MAX_DISTRIBUTION_ATTEMPTS,
    ))
    lump_sum_due = and_(
        Plan.distribution_method == DistributionMethod.LUMP_SUM.value,
        or_(Plan.transfer_date <= now, early_claim_unlocked),
        pending_notice,
    )
    period_due = exists().where(and_(
        Distribution.plan_id == Plan.id,
        or_(
            and_(Distribution.status.in_(OPEN_DISTRIBUTION_STATUSES), Distribution.scheduled_date <= now),
            and_(Distribution.status == DistributionStatus.PENDING.value,
                 Distribution.scheduled_date <= notice_horizon),
        ),
    ))

    conditions = [and_(Plan.status == PlanStatus.ACTIVE.value, or_(lump_sum_due, period_due))]
    if config.CLAIM_WINDOW_DAYS > 0:
        conditions.append(and_(
            Plan.status.in_((PlanStatus.ACTIVE.value, PlanStatus.PAUSED.value)),
            Plan.distribution_method == DistributionMethod.LUMP_SUM.value,
            Plan.is_claimed_fully.is_(False),
            Plan.transfer_date <= now - timedelta(days=config.CLAIM_WINDOW_DAYS),
        ))

    rows = db.query(Plan.id).filter(or_(*conditions)).order_by(Plan.id).all()
    return [row[0] for row in rows]


def decrypt_claim_codes(plan: Plan, cipher: ClaimCodeCipher) -> List[Dict[str, object]]:
    """Recover each beneficiary's claim code for the owner's display."""
    return [
        {
            "beneficiary_index": b.beneficiary_index,
            "name": b.name,
            "email": b.email,
            "claim_code": cipher.decrypt(b.claim_code_encrypted),
        }
        for b in plan.beneficiaries
    ]
