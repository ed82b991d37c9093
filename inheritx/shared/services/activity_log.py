"""
Activity log recording and persisted-setting lookups.

Activity rows are added to the caller's session so they commit (or roll back)
together with the change they describe.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from inheritx.core.config import settings
from inheritx.shared.models.activity import ActivityLog, Setting

logger = logging.getLogger(__name__)

CREATION_FEE_SETTING = "creation_fee_bps"


def record_activity(
    db: Session,
    actor: str,
    activity_type: str,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    plan_id: Optional[int] = None,
    old_status: Optional[str] = None,
    new_status: Optional[str] = None,
) -> ActivityLog:
    """Append an activity row to the current unit of work."""
    entry = ActivityLog(
        actor=actor,
        plan_id=plan_id,
        activity_type=activity_type,
        description=description,
        details=metadata,
        old_status=old_status,
        new_status=new_status,
    )
    db.add(entry)
    logger.debug(f"Activity {activity_type} by {actor} (plan {plan_id})")
    return entry


def get_setting(db: Session, key: str) -> Optional[Setting]:
    return db.query(Setting).filter(Setting.key == key).first()


def get_int_setting(db: Session, key: str, default: int) -> int:
    """Read an integer setting, falling back to default when missing or malformed."""
    row = get_setting(db, key)
    if row is None:
        return default
    try:
        return int(row.value)
    except (TypeError, ValueError):
        logger.warning(f"Setting {key!r} has non-integer value {row.value!r}; using {default}")
        return default


def upsert_setting(db: Session, key: str, value: str, value_type: str = "string") -> Setting:
    row = get_setting(db, key)
    if row is None:
        row = Setting(key=key, value=value, value_type=value_type)
        db.add(row)
    else:
        row.value = value
        row.value_type = value_type
    return row


def get_creation_fee_bps(db: Session) -> int:
    """
    Creation fee in basis points.

    The persisted setting is authoritative; the configured default only covers
    a fresh database that has not been seeded yet.
    """
    row = get_setting(db, CREATION_FEE_SETTING)
    if row is None:
        logger.warning(
            f"No '{CREATION_FEE_SETTING}' setting found; "
            f"using configured default {settings.DEFAULT_CREATION_FEE_BPS} bps"
        )
        return settings.DEFAULT_CREATION_FEE_BPS
    return get_int_setting(db, CREATION_FEE_SETTING, settings.DEFAULT_CREATION_FEE_BPS)
