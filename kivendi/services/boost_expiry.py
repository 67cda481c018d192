"""Deactivate boosts whose end date has passed and clear ads.is_boosted."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from kivendi.db.base import utcnow
from kivendi.db.models import Ad, AdBoost
from kivendi.db.session import SessionLocal

logger = logging.getLogger(__name__)


@dataclass
class ExpiryResult:
    boosts_deactivated: int
    ads_unflagged: int


def expire_boosts(db: Session, now: datetime | None = None) -> ExpiryResult:
    """Two set-based updates in the caller's transaction. Idempotent."""
    now = now or utcnow()
    deactivated = db.execute(
        update(AdBoost)
        .where(AdBoost.is_active.is_(True), AdBoost.end_date <= now)
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount or 0

    still_active = select(AdBoost.id).where(AdBoost.ad_id == Ad.id, AdBoost.is_active.is_(True)).exists()
    unflagged = db.execute(
        update(Ad)
        .where(Ad.is_boosted.is_(True), ~still_active)
        .values(is_boosted=False, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    return ExpiryResult(deactivated, unflagged)


def run_boost_expiry(now: datetime | None = None) -> ExpiryResult:
    """One expiry pass in its own transaction."""
    db = SessionLocal()
    try:
        result = expire_boosts(db, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    logger.info(
        "Boost expiry: %s boosts deactivated, %s ads unflagged",
        result.boosts_deactivated, result.ads_unflagged,
    )
    return result
