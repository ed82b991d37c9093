"""
Background Scheduler for the Inheritance Engine

Uses APScheduler to run the distribution pass on an interval, send proof of
life prompts once a day and sweep expired plan locks. Job errors are logged
and never stop the scheduler.
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from inheritx.core.config import settings
from inheritx.core.database import SessionLocal
from inheritx.core.timezone import UTC
from inheritx.modules.claims.cipher import get_cipher
from inheritx.modules.distributions.locks import sweep_expired_locks
from inheritx.modules.distributions.services import DistributionScheduler
from inheritx.modules.ledger.client import get_ledger_client
from inheritx.modules.proof_of_life.services import ProofOfLifeMonitor
from inheritx.shared.services.notifications import get_notification_service

logger = logging.getLogger(__name__)


def build_distribution_scheduler() -> DistributionScheduler:
    """Distribution scheduler wired to the process-wide collaborators."""
    return DistributionScheduler(
        session_factory=SessionLocal,
        ledger=get_ledger_client(),
        notifier=get_notification_service(),
        cipher=get_cipher(),
        config=settings,
    )


class EngineScheduler:
    """Manages the engine's scheduled jobs."""

    def __init__(self, distribution_scheduler: Optional[DistributionScheduler] = None):
        self.distributions = distribution_scheduler or build_distribution_scheduler()
        self.scheduler = BackgroundScheduler(timezone=UTC)
        self.scheduler.start()
        logger.info("Engine scheduler started")

    def setup_schedules(self):
        """Set up all scheduled jobs."""
        # One pass at a time; a pass that overruns its slot is coalesced, never stacked
        self.scheduler.add_job(
            self.run_distribution_pass,
            trigger=IntervalTrigger(minutes=settings.SCHEDULER_INTERVAL_MINUTES),
            id='distribution_pass',
            name=f'Distribution pass (every {settings.SCHEDULER_INTERVAL_MINUTES} min)',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        # Daily proof of life prompts at 09:00 UTC
        self.scheduler.add_job(
            self.send_proof_of_life_prompts,
            trigger=CronTrigger(hour=9, minute=0, timezone=UTC),
            id='proof_of_life_prompts',
            name='Proof of life prompts (daily 09:00 UTC)',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        # Hourly cleanup of locks left behind by crashed workers
        self.scheduler.add_job(
            self.sweep_locks,
            trigger=IntervalTrigger(hours=1),
            id='lock_sweep',
            name='Expired plan lock sweep (hourly)',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        logger.info("Scheduled jobs configured")

    def run_distribution_pass(self) -> Optional[Dict[str, Any]]:
        try:
            return self.distributions.run_pass().to_dict()
        except Exception as e:
            logger.error(f"Distribution pass failed: {e}", exc_info=True)
            return None

    def send_proof_of_life_prompts(self) -> int:
        db = SessionLocal()
        try:
            return ProofOfLifeMonitor(db, self.distributions.notifier).send_due_prompts()
        except Exception as e:
            logger.error(f"Proof of life job failed: {e}", exc_info=True)
            return 0
        finally:
            db.close()

    def sweep_locks(self) -> int:
        db = SessionLocal()
        try:
            return sweep_expired_locks(db)
        except Exception as e:
            logger.error(f"Lock sweep failed: {e}", exc_info=True)
            return 0
        finally:
            db.close()

    def shutdown(self):
        """Shutdown the scheduler."""
        self.scheduler.shutdown(wait=False)
        logger.info("Engine scheduler shutdown")


# Global scheduler instance
_scheduler: Optional[EngineScheduler] = None


def get_scheduler() -> Optional[EngineScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


def start_scheduler():
    """Start the engine scheduler."""
    global _scheduler
    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled by configuration")
        return
    if _scheduler is None:
        _scheduler = EngineScheduler()
        _scheduler.setup_schedules()
        logger.info("Engine scheduler started and configured")
    else:
        logger.info("Engine scheduler already running")


def stop_scheduler():
    """Stop the engine scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown()
        _scheduler = None
        logger.info("Engine scheduler stopped")


def trigger_manual_pass() -> Dict[str, Any]:
    """Run one distribution pass now, outside the interval."""
    if _scheduler:
        return _scheduler.distributions.run_pass().to_dict()
    return build_distribution_scheduler().run_pass().to_dict()
