"""
Per-plan advisory locks stored as rows with an expiry.

A worker that crashes mid-item leaves its row behind; once expired, the next
worker takes it over, so no plan can stay stuck. Acquisition and release commit
immediately so other workers see them; callers must therefore not hold
uncommitted work in the session when entering the lock.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inheritx.core.errors import PlanLocked
from inheritx.core.timezone import utcnow
from inheritx.modules.plans.models import PlanLock

logger = logging.getLogger(__name__)


def new_holder_id(prefix: str = "worker") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def try_acquire(db: Session, plan_id: int, holder: str, ttl_seconds: int,
                now: Optional[datetime] = None) -> bool:
    """Try to take the lock for plan_id. Returns False if another holder has a live lock."""
    now = now or utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)

    # Take over an expired row with a conditional update; only one worker can match it
    taken = db.query(PlanLock).filter(
        PlanLock.plan_id == plan_id,
        PlanLock.expires_at <= now,
    ).update(
        {"holder": holder, "acquired_at": now, "expires_at": expires_at, "updated_at": now},
        synchronize_session=False,
    )
    if taken:
        db.commit()
        logger.warning(f"Took over expired lock on plan {plan_id} ({holder})")
        return True

    db.add(PlanLock(plan_id=plan_id, holder=holder, acquired_at=now, expires_at=expires_at))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug(f"Plan {plan_id} is locked by another worker")
        return False
    return True


def release(db: Session, plan_id: int, holder: str) -> None:
    """Drop the lock if this holder still owns it."""
    db.query(PlanLock).filter(
        PlanLock.plan_id == plan_id,
        PlanLock.holder == holder,
    ).delete(synchronize_session=False)
    db.commit()


@contextmanager
def plan_lock(db: Session, plan_id: int, ttl_seconds: int, holder: Optional[str] = None) -> Iterator[str]:
    """
    Hold the plan lock for the duration of the block.

    Raises PlanLocked if another holder has it. The lock is released on every
    exit path; pending work in the session is rolled back first if the block raised.
    """
    holder = holder or new_holder_id()
    if not try_acquire(db, plan_id, holder, ttl_seconds):
        raise PlanLocked(f"Plan {plan_id} is locked")
    try:
        yield holder
    except BaseException:
        db.rollback()
        raise
    finally:
        try:
            release(db, plan_id, holder)
        except Exception as e:
            # The row expires on its own; log and let the original outcome stand
            db.rollback()
            logger.error(f"Failed to release lock on plan {plan_id}: {e}", exc_info=True)


def sweep_expired_locks(db: Session, now: Optional[datetime] = None) -> int:
    """Delete expired lock rows left behind by crashed workers."""
    now = now or utcnow()
    count = db.query(PlanLock).filter(PlanLock.expires_at <= now).delete(synchronize_session=False)
    db.commit()
    if count:
        logger.info(f"Swept {count} expired plan lock(s)")
    return count
