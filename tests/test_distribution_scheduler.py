"""
Distribution scheduler tests.

Passes run against the shared in-memory database with a single worker so the
outcome is deterministic.
"""

import threading
from datetime import timedelta

import pytest

from inheritx.core.errors import InvalidState, LedgerError
from inheritx.modules.distributions import services as distribution_services
from inheritx.modules.distributions.locks import plan_lock
from inheritx.modules.distributions.services import (
    OUTCOME_EXPIRED,
    OUTCOME_FAILED,
    OUTCOME_LOCKED,
    OUTCOME_PROCESSED,
    OUTCOME_SKIPPED,
    DistributionScheduler,
    retry_distribution,
)
from inheritx.modules.plans.lifecycle import PlanLifecycle
from inheritx.modules.plans.models import (
    Distribution,
    DistributionRelease,
    DistributionStatus,
    EscrowStatus,
    Plan,
    PlanLock,
    PlanStatus,
)
from inheritx.shared.models.activity import ActivityLog

from tests.conftest import NOW


@pytest.fixture
def scheduler(session_factory, ledger, notifier, cipher, config):
    return DistributionScheduler(session_factory, ledger, notifier, cipher, config)


def _reload(db, plan_id) -> Plan:
    db.expire_all()
    return db.get(Plan, plan_id)


# ============================================================================
# Lump sum: claim window opening
# ============================================================================

def test_lump_sum_past_transfer_date_sends_claim_codes(db, scheduler, notifier, ledger, make_plan):
    plan_id = make_plan(transfer_date=NOW - timedelta(days=1)).plan.id

    result = scheduler.run_pass(now=NOW)

    assert result.due == 1
    assert result.outcomes == {OUTCOME_PROCESSED: 1}
    sent_codes = sorted(call.args[2] for call in notifier.send_claim_code.call_args_list)
    assert sent_codes == ["ALICE1", "BOB222"]
    plan = _reload(db, plan_id)
    assert all(b.notification_sent for b in plan.beneficiaries)
    # Funds only move when beneficiaries claim
    assert ledger.releases == []
    assert plan.status == PlanStatus.ACTIVE.value

    # Nothing left to do on the next pass
    assert scheduler.run_pass(now=NOW).due == 0
    assert notifier.send_claim_code.call_count == 2


def test_lump_sum_before_transfer_date_is_not_due(scheduler, notifier, make_plan):
    make_plan(transfer_date=NOW + timedelta(days=10))
    assert scheduler.run_pass(now=NOW).due == 0
    notifier.send_claim_code.assert_not_called()


def test_failed_claim_code_delivery_retries_then_alerts(db, scheduler, notifier, make_plan):
    plan_id = make_plan().plan.id
    notifier.send_claim_code.return_value = False

    for _ in range(3):
        assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_FAILED

    plan = _reload(db, plan_id)
    assert [b.notification_attempts for b in plan.beneficiaries] == [3, 3]
    assert notifier.send_operator_alert.call_count == 2
    # Attempt ceiling reached: the plan is no longer picked up
    assert scheduler.run_pass(now=NOW).due == 0


def test_early_claim_unlocked_opens_window_before_transfer_date(db, scheduler, notifier, make_plan):
    plan = make_plan(transfer_date=NOW + timedelta(days=100),
                     proof_of_life_enabled=True, early_claim_enabled=True).plan
    plan.verification_fail_count = 3
    db.commit()

    result = scheduler.run_pass(now=NOW)

    assert result.outcomes == {OUTCOME_PROCESSED: 1}
    assert notifier.send_claim_code.call_count == 2


def test_paused_plan_is_skipped(db, scheduler, ledger, notifier, make_plan):
    plan = make_plan().plan
    PlanLifecycle(db, ledger).pause(plan, actor="0xowner")

    assert scheduler.process_plan(plan.id, now=NOW) == OUTCOME_SKIPPED
    notifier.send_claim_code.assert_not_called()


# ============================================================================
# Periodic releases
# ============================================================================

def test_due_period_released_to_every_beneficiary(db, scheduler, ledger, notifier, make_plan):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_PROCESSED

    assert ledger.releases == [(plan_id, 1, 150_000), (plan_id, 2, 100_000)]
    plan = _reload(db, plan_id)
    first, *rest = plan.distributions
    assert first.status == DistributionStatus.EXECUTED.value
    assert first.executed_at == NOW
    assert sorted(r.beneficiary_index for r in first.releases) == [1, 2]
    assert all(d.status == DistributionStatus.PENDING.value for d in rest)
    assert plan.escrow.released_amount == "250000"
    assert plan.status == PlanStatus.ACTIVE.value
    executed_notices = [c for c in notifier.send_distribution_notice.call_args_list if c.kwargs.get("executed")]
    assert len(executed_notices) == 2


def test_overdue_periods_release_in_order_and_execute_plan(db, scheduler, ledger, make_plan):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(days=400), amount=1003).plan.id

    scheduler.run_pass(now=NOW)

    plan = _reload(db, plan_id)
    assert [d.status for d in plan.distributions] == [DistributionStatus.EXECUTED.value] * 4
    # Period 4 carries the remainder, so release order is visible in the amounts
    assert [(index, amount) for _, index, amount in ledger.releases] == [
        (1, 150), (2, 100), (1, 150), (2, 100), (1, 150), (2, 100), (1, 151), (2, 102),
    ]
    assert plan.escrow.released_amount == "1003"
    assert plan.escrow.status == EscrowStatus.RELEASED.value
    assert plan.status == PlanStatus.EXECUTED.value
    assert plan.is_claimed_fully is True


def test_upcoming_period_gets_advance_notice(db, scheduler, ledger, notifier, make_plan):
    plan_id = make_plan(distribution_method="MONTHLY", periodic_percentage=50,
                        transfer_date=NOW + timedelta(days=2)).plan.id

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_PROCESSED

    plan = _reload(db, plan_id)
    assert plan.distributions[0].status == DistributionStatus.NOTIFIED.value
    assert plan.distributions[0].notified_at == NOW
    assert notifier.send_distribution_notice.call_count == 2
    assert ledger.releases == []
    # Already announced, not yet due
    assert scheduler.run_pass(now=NOW).due == 0


def test_notified_period_released_when_due(db, scheduler, ledger, make_plan):
    plan_id = make_plan(distribution_method="MONTHLY", periodic_percentage=50,
                        transfer_date=NOW + timedelta(days=2)).plan.id
    scheduler.process_plan(plan_id, now=NOW)

    scheduler.process_plan(plan_id, now=NOW + timedelta(days=2))

    plan = _reload(db, plan_id)
    assert plan.distributions[0].status == DistributionStatus.EXECUTED.value
    assert len(ledger.releases) == 2


# ============================================================================
# Failures and retries
# ============================================================================

def test_ledger_failure_keeps_period_pending_and_counts_attempt(db, scheduler, ledger, make_plan):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id
    ledger.fail_next("release", timeout=True)

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_FAILED

    period = _reload(db, plan_id).distributions[0]
    assert period.status == DistributionStatus.PENDING.value
    assert period.attempts == 1
    assert "timed out" in period.last_error

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_PROCESSED
    assert _reload(db, plan_id).distributions[0].status == DistributionStatus.EXECUTED.value


def test_retry_only_pays_beneficiaries_not_yet_paid(db, scheduler, ledger, make_plan):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id
    real_release = ledger.release_escrow
    failed = []

    def flaky_release(pid, index, amount):
        if index == 2 and not failed:
            failed.append(index)
            raise LedgerError("gateway unavailable")
        return real_release(pid, index, amount)

    ledger.release_escrow = flaky_release

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_FAILED
    assert ledger.releases == [(plan_id, 1, 150_000)]

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_PROCESSED
    assert ledger.releases == [(plan_id, 1, 150_000), (plan_id, 2, 100_000)]
    assert db.query(DistributionRelease).count() == 2


def test_exhausted_attempts_mark_failed_alert_and_block_later_periods(
    db, scheduler, ledger, notifier, make_plan
):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(days=400)).plan.id
    ledger.fail_next("release", times=3)

    for _ in range(3):
        scheduler.process_plan(plan_id, now=NOW)

    plan = _reload(db, plan_id)
    assert plan.distributions[0].status == DistributionStatus.FAILED.value
    assert plan.distributions[0].attempts == 3
    notifier.send_operator_alert.assert_called_once()
    assert db.query(ActivityLog).filter(ActivityLog.activity_type == "DISTRIBUTION_FAILED").count() == 1

    # Period 1 gates the rest until an operator retries it
    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_SKIPPED
    assert ledger.releases == []
    assert all(d.status == DistributionStatus.PENDING.value for d in plan.distributions[1:])

    retried = retry_distribution(db, plan.distributions[0].id, actor="admin")
    assert retried.status == DistributionStatus.PENDING.value
    assert retried.attempts == 0

    scheduler.process_plan(plan_id, now=NOW)
    assert _reload(db, plan_id).status == PlanStatus.EXECUTED.value


def test_overdraw_refused_before_paying_and_fails_after_ceiling(db, scheduler, ledger, notifier, make_plan):
    plan = make_plan(distribution_method="MONTHLY", periodic_percentage=50,
                     transfer_date=NOW - timedelta(hours=1)).plan
    # Room for beneficiary 1 (300000) but not beneficiary 2 (200000)
    plan.escrow.released_amount = str(int(plan.escrow.amount_locked) - 350_000)
    db.commit()

    for _ in range(3):
        assert scheduler.process_plan(plan.id, now=NOW) == OUTCOME_FAILED

    assert ledger.releases == [(plan.id, 1, 300_000)]
    period = _reload(db, plan.id).distributions[0]
    assert period.status == DistributionStatus.FAILED.value
    assert period.attempts == 3
    assert [r.beneficiary_index for r in period.releases] == [1]
    notifier.send_operator_alert.assert_called_once()


def test_confirmed_release_recorded_when_bookkeeping_fails(db, scheduler, ledger, notifier, make_plan, monkeypatch):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id
    real_record = distribution_services.record_escrow_release
    broken = []

    def fail_once(plan, amount):
        if not broken:
            broken.append(amount)
            raise RuntimeError("database went away")
        return real_record(plan, amount)

    monkeypatch.setattr(distribution_services, "record_escrow_release", fail_once)

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_FAILED

    assert ledger.releases == [(plan_id, 1, 150_000)]
    period = _reload(db, plan_id).distributions[0]
    assert period.status == DistributionStatus.PENDING.value
    assert period.attempts == 1
    assert [(r.beneficiary_index, r.amount) for r in period.releases] == [(1, "150000")]
    notifier.send_operator_alert.assert_called_once()

    # Beneficiary 1 is not paid a second time
    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_PROCESSED
    assert ledger.releases == [(plan_id, 1, 150_000), (plan_id, 2, 100_000)]
    assert _reload(db, plan_id).distributions[0].status == DistributionStatus.EXECUTED.value


def test_retry_rejects_non_failed_distribution(db, make_plan):
    plan = make_plan(distribution_method="MONTHLY", periodic_percentage=50).plan
    with pytest.raises(InvalidState):
        retry_distribution(db, plan.distributions[0].id, actor="admin")


def test_item_timeout_counts_as_failed_attempt(db, scheduler, ledger, config, monkeypatch, make_plan):
    monkeypatch.setattr(config, "ITEM_TIMEOUT_SECONDS", -1)
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id

    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_FAILED

    assert ledger.releases == []
    period = _reload(db, plan_id).distributions[0]
    assert period.attempts == 1
    assert period.status == DistributionStatus.PENDING.value


# ============================================================================
# Concurrency and expiry
# ============================================================================

def test_locked_plan_is_skipped_without_ledger_calls(db, scheduler, ledger, session_factory, make_plan):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id
    other = session_factory()
    try:
        with plan_lock(other, plan_id, ttl_seconds=300, holder="worker-a"):
            assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_LOCKED
    finally:
        other.close()

    assert ledger.releases == []
    assert scheduler.process_plan(plan_id, now=NOW) == OUTCOME_PROCESSED
    assert len(ledger.releases) == 2


def test_period_released_exactly_once_across_passes(db, scheduler, ledger, make_plan):
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id

    scheduler.run_pass(now=NOW)
    scheduler.run_pass(now=NOW)
    scheduler.process_plan(plan_id, now=NOW)

    assert len(ledger.releases) == 2
    period = db.query(Distribution).filter(Distribution.plan_id == plan_id, Distribution.period_number == 1).one()
    assert len(period.releases) == 2


def test_claim_window_expiry_refunds_remainder(db, scheduler, ledger, config, monkeypatch, make_plan):
    monkeypatch.setattr(config, "CLAIM_WINDOW_DAYS", 30)
    plan_id = make_plan(transfer_date=NOW - timedelta(days=40)).plan.id

    result = scheduler.run_pass(now=NOW)

    assert result.outcomes == {OUTCOME_EXPIRED: 1}
    plan = _reload(db, plan_id)
    assert plan.status == PlanStatus.EXPIRED.value
    assert plan.escrow.status == EscrowStatus.REFUNDED.value
    assert ledger.refunds == [plan_id]


def test_unexpected_error_in_one_plan_does_not_stop_the_pass(db, scheduler, make_plan, monkeypatch):
    first = make_plan().plan.id
    second = make_plan().plan.id
    real = scheduler._open_claim_window

    def explode_on_first(db_, plan, now, deadline):
        if plan.id == first:
            raise RuntimeError("boom")
        return real(db_, plan, now, deadline)

    monkeypatch.setattr(scheduler, "_open_claim_window", explode_on_first)

    result = scheduler.run_pass(now=NOW)

    assert result.errors == 1
    assert result.outcomes == {OUTCOME_PROCESSED: 1}
    assert all(b.notification_sent for b in _reload(db, second).beneficiaries)


def test_pass_deadline_abandons_slow_plan_and_lock_is_released(db, scheduler, ledger, config, monkeypatch, make_plan):
    monkeypatch.setattr(config, "PASS_DEADLINE_SECONDS", 0.2)
    plan_id = make_plan(distribution_method="QUARTERLY", periodic_percentage=25,
                        transfer_date=NOW - timedelta(hours=1)).plan.id
    release = threading.Event()
    real = scheduler._process_periods
    stalled = []

    def stall_first(db_, plan, now, deadline):
        if not stalled:
            stalled.append(plan.id)
            release.wait(timeout=5)
            return OUTCOME_SKIPPED
        return real(db_, plan, now, deadline)

    monkeypatch.setattr(scheduler, "_process_periods", stall_first)

    result = scheduler.run_pass(now=NOW)

    assert result.abandoned == 1
    assert result.outcomes == {}
    release.set()
    for thread in threading.enumerate():
        if thread.name.startswith("distribution-worker"):
            thread.join(timeout=5)

    assert ledger.releases == []
    assert _reload(db, plan_id).distributions[0].status == DistributionStatus.PENDING.value
    assert db.query(PlanLock).count() == 0

    # The next pass picks the plan up again
    assert scheduler.run_pass(now=NOW).outcomes == {OUTCOME_PROCESSED: 1}
    assert len(ledger.releases) == 2
