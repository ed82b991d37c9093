"""
Inheritance plan database models.

Amounts in base units (wei) are stored as decimal-integer strings because they
exceed the range of 64-bit integers; the *_value properties expose them as int.
"""

from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, ForeignKey,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from inheritx.shared.models.base import BaseModel


class AssetType(str, Enum):
    ERC20_TOKEN1 = "ERC20_TOKEN1"
    ERC20_TOKEN2 = "ERC20_TOKEN2"
    ERC20_TOKEN3 = "ERC20_TOKEN3"
    NFT = "NFT"


class DistributionMethod(str, Enum):
    LUMP_SUM = "LUMP_SUM"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class PlanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    EXECUTED = "EXECUTED"


class DistributionStatus(str, Enum):
    PENDING = "PENDING"
    NOTIFIED = "NOTIFIED"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class EscrowStatus(str, Enum):
    LOCKED = "LOCKED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


TERMINAL_PLAN_STATUSES = (PlanStatus.CANCELLED.value, PlanStatus.EXPIRED.value, PlanStatus.EXECUTED.value)
OPEN_DISTRIBUTION_STATUSES = (DistributionStatus.PENDING.value, DistributionStatus.NOTIFIED.value)


class Plan(BaseModel):
    """An inheritance plan: escrowed asset, beneficiaries, schedule and claim protection."""

    __tablename__ = "plans"

    # On-chain identity (attached once the contract call is confirmed)
    global_plan_id = Column(Integer, nullable=True, unique=True)
    user_plan_id = Column(Integer, nullable=True)
    tx_hash = Column(String(100), nullable=True)

    owner_address = Column(String(100), nullable=False)
    owner_email = Column(String(200), nullable=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)

    asset_type = Column(String(20), nullable=False)
    asset_amount = Column(String(80), nullable=False)      # human decimal string, e.g. "1.5"
    asset_amount_wei = Column(String(80), nullable=False)  # base units

    distribution_method = Column(String(20), nullable=False)
    transfer_date = Column(DateTime, nullable=False)  # lump-sum date, or first period for periodic plans
    periodic_percentage = Column(Integer, nullable=True)
    end_date = Column(DateTime, nullable=True)  # last scheduled period

    # Proof of life (LUMP_SUM only)
    proof_of_life_enabled = Column(Boolean, nullable=False, default=False)
    early_claim_enabled = Column(Boolean, nullable=False, default=False)
    verification_token = Column(String(100), nullable=True, unique=True)
    last_verification_sent = Column(DateTime, nullable=True)
    last_verification_at = Column(DateTime, nullable=True)
    verification_fail_count = Column(Integer, nullable=False, default=0)

    notify_beneficiaries = Column(Boolean, nullable=False, default=False)

    status = Column(String(20), nullable=False, default=PlanStatus.ACTIVE.value)
    is_claimed_fully = Column(Boolean, nullable=False, default=False)

    # Relationships
    beneficiaries = relationship(
        "Beneficiary", back_populates="plan",
        order_by="Beneficiary.beneficiary_index", cascade="all, delete-orphan",
    )
    distributions = relationship(
        "Distribution", back_populates="plan",
        order_by="Distribution.period_number", cascade="all, delete-orphan",
    )
    escrow = relationship("EscrowRecord", back_populates="plan", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_plan_status", "status"),
        Index("idx_plan_owner", "owner_address"),
        Index("idx_plan_transfer_date", "transfer_date"),
    )

    @property
    def is_lump_sum(self) -> bool:
        return self.distribution_method == DistributionMethod.LUMP_SUM.value

    def __repr__(self):
        return f"<Plan {self.id} {self.name!r} {self.status}>"


class Beneficiary(BaseModel):
    """A named recipient of a basis-point share of a plan."""

    __tablename__ = "plan_beneficiaries"

    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    beneficiary_index = Column(Integer, nullable=False)  # 1-based, matches on-chain index

    # Plaintext kept for notifications only
    name = Column(String(100), nullable=False)
    email = Column(String(200), nullable=False)
    relationship_label = Column("relationship", String(50), nullable=False)

    # One-way identity hashes used for claim matching
    name_hash = Column(String(66), nullable=False)
    email_hash = Column(String(66), nullable=False)
    relationship_hash = Column(String(66), nullable=False)
    combined_hash = Column(String(66), nullable=False)

    allocated_percentage = Column(Integer, nullable=False)  # basis points
    allocated_amount = Column(String(80), nullable=False)   # base units

    claim_code_encrypted = Column(Text, nullable=False)
    claim_code_hash = Column(String(66), nullable=False)

    has_claimed = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime, nullable=True)
    claimed_by_address = Column(String(100), nullable=True)
    claimed_amount = Column(String(80), nullable=True)
    claim_tx_hash = Column(String(100), nullable=True)

    notification_sent = Column(Boolean, nullable=False, default=False)
    notification_sent_at = Column(DateTime, nullable=True)
    notification_attempts = Column(Integer, nullable=False, default=0)

    plan = relationship("Plan", back_populates="beneficiaries")

    __table_args__ = (
        UniqueConstraint("plan_id", "beneficiary_index", name="uq_beneficiary_plan_index"),
        Index("idx_beneficiary_email_hash", "email_hash"),
    )

    @property
    def allocated_amount_value(self) -> int:
        return int(self.allocated_amount)


class Distribution(BaseModel):
    """One scheduled release within a periodic plan."""

    __tablename__ = "plan_distributions"

    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    period_number = Column(Integer, nullable=False)  # 1-based
    amount = Column(String(80), nullable=False)
    scheduled_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=DistributionStatus.PENDING.value)

    executed_at = Column(DateTime, nullable=True)
    tx_hash = Column(String(100), nullable=True)
    notified_at = Column(DateTime, nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    plan = relationship("Plan", back_populates="distributions")
    releases = relationship("DistributionRelease", back_populates="distribution", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("plan_id", "period_number", name="uq_distribution_plan_period"),
        Index("idx_distribution_due", "status", "scheduled_date"),
    )

    @property
    def amount_value(self) -> int:
        return int(self.amount)


class DistributionRelease(BaseModel):
    """A single beneficiary's ledger release within a distribution period."""

    __tablename__ = "distribution_releases"

    distribution_id = Column(Integer, ForeignKey("plan_distributions.id"), nullable=False)
    beneficiary_index = Column(Integer, nullable=False)
    amount = Column(String(80), nullable=False)
    tx_hash = Column(String(100), nullable=False)

    distribution = relationship("Distribution", back_populates="releases")

    __table_args__ = (
        UniqueConstraint("distribution_id", "beneficiary_index", name="uq_release_distribution_beneficiary"),
    )


class EscrowRecord(BaseModel):
    """Assets locked for a plan. Owned by exactly one plan."""

    __tablename__ = "escrow_records"

    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, unique=True)
    amount_locked = Column(String(80), nullable=False)  # allocable amount, excluding fee
    fee_bps = Column(Integer, nullable=False)
    fee_amount = Column(String(80), nullable=False)
    locked_at = Column(DateTime, nullable=False)
    release_conditions_count = Column(Integer, nullable=False, default=1)
    released_amount = Column(String(80), nullable=False, default="0")
    status = Column(String(20), nullable=False, default=EscrowStatus.LOCKED.value)
    lock_tx_hash = Column(String(100), nullable=True)
    refund_tx_hash = Column(String(100), nullable=True)

    plan = relationship("Plan", back_populates="escrow")

    @property
    def remaining(self) -> int:
        return int(self.amount_locked) - int(self.released_amount)


class PlanLock(BaseModel):
    """Advisory per-plan processing lock. Expired rows may be taken over."""

    __tablename__ = "plan_locks"

    plan_id = Column(Integer, nullable=False, unique=True)
    holder = Column(String(100), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
