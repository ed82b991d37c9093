"""
Plan lock tests.
"""

from datetime import timedelta

import pytest

from inheritx.core.errors import PlanLocked
from inheritx.modules.distributions.locks import plan_lock, release, sweep_expired_locks, try_acquire
from inheritx.modules.plans.models import PlanLock

from tests.conftest import NOW


def test_second_holder_is_refused_while_lock_is_live(db, session_factory, make_plan):
    plan_id = make_plan().plan.id
    other = session_factory()
    try:
        assert try_acquire(db, plan_id, "a", ttl_seconds=60, now=NOW)
        assert not try_acquire(other, plan_id, "b", ttl_seconds=60, now=NOW + timedelta(seconds=30))
    finally:
        other.close()


def test_expired_lock_is_taken_over(db, session_factory, make_plan):
    plan_id = make_plan().plan.id
    assert try_acquire(db, plan_id, "crashed", ttl_seconds=60, now=NOW)

    other = session_factory()
    try:
        assert try_acquire(other, plan_id, "b", ttl_seconds=60, now=NOW + timedelta(seconds=61))
    finally:
        other.close()

    db.expire_all()
    assert db.query(PlanLock).one().holder == "b"


def test_release_only_drops_own_lock(db, make_plan):
    plan_id = make_plan().plan.id
    try_acquire(db, plan_id, "a", ttl_seconds=60)

    release(db, plan_id, "someone-else")
    assert db.query(PlanLock).count() == 1

    release(db, plan_id, "a")
    assert db.query(PlanLock).count() == 0


def test_plan_lock_released_when_block_raises(db, make_plan):
    plan_id = make_plan().plan.id
    with pytest.raises(ValueError):
        with plan_lock(db, plan_id, ttl_seconds=60):
            raise ValueError("boom")
    assert db.query(PlanLock).count() == 0


def test_plan_lock_raises_when_held(db, make_plan):
    plan_id = make_plan().plan.id
    with plan_lock(db, plan_id, ttl_seconds=60, holder="outer"):
        with pytest.raises(PlanLocked):
            with plan_lock(db, plan_id, ttl_seconds=60, holder="inner"):
                pass
        # The refused attempt must not drop the outer holder's row
        assert db.query(PlanLock).one().holder == "outer"


def test_sweep_removes_only_expired_locks(db, make_plan):
    stale = make_plan().plan.id
    live = make_plan().plan.id
    try_acquire(db, stale, "a", ttl_seconds=60, now=NOW - timedelta(hours=1))
    try_acquire(db, live, "b", ttl_seconds=60, now=NOW)

    assert sweep_expired_locks(db, now=NOW) == 1
    assert [lock.plan_id for lock in db.query(PlanLock).all()] == [live]
