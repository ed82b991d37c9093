"""
Shared fixtures: in-memory SQLite database, fake ledger, mock notifier.
"""

import os

# Configure before any inheritx import builds settings or the engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ADMIN_PASSWORD", "test-admin-password")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from datetime import datetime, timedelta
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from inheritx.core.config import settings
from inheritx.core.database import Base
from inheritx.core.errors import LedgerError, LedgerTimeout
from inheritx.modules.claims.cipher import ClaimCodeCipher
from inheritx.modules.ledger.client import LedgerClient
from inheritx.modules.plans import models as plan_models  # noqa: F401  registers tables
from inheritx.modules.plans.store import BeneficiaryInput, PlanInput, create_plan
from inheritx.shared.models import activity as activity_models  # noqa: F401
from inheritx.shared.services.activity_log import CREATION_FEE_SETTING, upsert_setting
from inheritx.shared.services.notifications import NotificationService


NOW = datetime(2026, 3, 1, 12, 0, 0)


# ============================================================================
# Fake collaborators
# ============================================================================

class FakeLedger(LedgerClient):
    """Records every call; failures can be queued per method."""

    name = "fake"

    def __init__(self):
        self.locks: List[tuple] = []
        self.releases: List[tuple] = []
        self.refunds: List[int] = []
        self.failures: Dict[str, List[Exception]] = {"lock": [], "release": [], "refund": []}
        self._n = 0

    def fail_next(self, method: str, times: int = 1, timeout: bool = False):
        error = LedgerTimeout("gateway timed out") if timeout else LedgerError("gateway unavailable")
        self.failures[method].extend([error] * times)

    def _maybe_fail(self, method: str):
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def _tx(self, kind: str) -> str:
        self._n += 1
        return f"0x{kind}{self._n:060d}"

    def lock_escrow(self, plan_id: int, asset_type: str, amount: int) -> str:
        self._maybe_fail("lock")
        self.locks.append((plan_id, asset_type, amount))
        return self._tx("aa")

    def release_escrow(self, plan_id: int, beneficiary_index: int, amount: int) -> str:
        self._maybe_fail("release")
        self.releases.append((plan_id, beneficiary_index, amount))
        return self._tx("bb")

    def refund_escrow(self, plan_id: int) -> str:
        self._maybe_fail("refund")
        self.refunds.append(plan_id)
        return self._tx("cc")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    upsert_setting(session, CREATION_FEE_SETTING, "500", "int")
    session.commit()
    yield session
    session.close()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def notifier():
    mock = MagicMock(spec=NotificationService)
    mock.send_claim_code.return_value = True
    mock.send_check_in_prompt.return_value = True
    mock.send_distribution_notice.return_value = True
    mock.send_plan_created.return_value = True
    mock.send_operator_alert.return_value = {"console": True}
    return mock


@pytest.fixture(scope="session")
def cipher():
    # Key derivation is deliberately slow; build once per run
    return ClaimCodeCipher("test-claim-code-secret")


@pytest.fixture
def config(monkeypatch):
    """The global settings, with scheduler knobs pinned for deterministic tests."""
    monkeypatch.setattr(settings, "SCHEDULER_WORKERS", 1)
    monkeypatch.setattr(settings, "MAX_DISTRIBUTION_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "DISTRIBUTION_NOTICE_DAYS", 3)
    monkeypatch.setattr(settings, "CLAIM_WINDOW_DAYS", 0)
    monkeypatch.setattr(settings, "PROOF_OF_LIFE_FAIL_THRESHOLD", 3)
    monkeypatch.setattr(settings, "PROOF_OF_LIFE_INTERVAL_DAYS", 30)
    monkeypatch.setattr(settings, "ITEM_TIMEOUT_SECONDS", 120)
    monkeypatch.setattr(settings, "PASS_DEADLINE_SECONDS", 60)
    return settings


def default_beneficiaries() -> List[BeneficiaryInput]:
    return [
        BeneficiaryInput(name="Alice Smith", email="alice@example.com", relationship="Daughter",
                         allocated_percentage=6000, claim_code="ALICE1"),
        BeneficiaryInput(name="Bob Smith", email="bob@example.com", relationship="Son",
                         allocated_percentage=4000, claim_code="BOB222"),
    ]


@pytest.fixture
def make_plan(db, ledger, cipher):
    """Factory creating a plan through the real create path."""

    def _make(
        distribution_method: str = "LUMP_SUM",
        transfer_date: Optional[datetime] = None,
        amount: int = 1_000_000,
        periodic_percentage: Optional[int] = None,
        beneficiaries: Optional[List[BeneficiaryInput]] = None,
        owner: str = "0xowner",
        **overrides,
    ):
        data = PlanInput(
            owner_address=owner,
            owner_email="owner@example.com",
            name="Family plan",
            description="Test plan",
            asset_type="ERC20_TOKEN1",
            asset_amount="1",
            asset_amount_wei=str(amount),
            distribution_method=distribution_method,
            transfer_date=transfer_date or NOW - timedelta(days=1),
            periodic_percentage=periodic_percentage,
            beneficiaries=beneficiaries or default_beneficiaries(),
            **overrides,
        )
        return create_plan(db, data, ledger, cipher, now=NOW)

    return _make
