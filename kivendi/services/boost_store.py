"""Queries over boost offers and ad boosts."""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, insert, literal, select, update
from sqlalchemy.orm import Session

from kivendi.db.base import utcnow
from kivendi.db.models import AD_VALIDATED, PAYMENT_COMPLETED, Ad, AdBoost, BoostOffer


def list_active_offers(db: Session) -> list[BoostOffer]:
    return list(
        db.execute(
            select(BoostOffer)
            .where(BoostOffer.is_active.is_(True))
            .order_by(BoostOffer.display_order.asc(), BoostOffer.id.asc())
        ).scalars()
    )


def get_active_offer(db: Session, offer_id: int) -> BoostOffer | None:
    return db.execute(
        select(BoostOffer).where(BoostOffer.id == offer_id, BoostOffer.is_active.is_(True))
    ).scalar_one_or_none()


def boost_by_transaction(db: Session, transaction_id: str) -> AdBoost | None:
    return db.execute(
        select(AdBoost).where(AdBoost.transaction_id == transaction_id)
    ).scalar_one_or_none()


def current_boost(db: Session, ad_id: int, now: datetime | None = None) -> AdBoost | None:
    """Active, unexpired boost for an ad."""
    now = now or utcnow()
    return db.execute(
        select(AdBoost)
        .where(AdBoost.ad_id == ad_id, AdBoost.is_active.is_(True), AdBoost.end_date > now)
        .order_by(AdBoost.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def deactivate_expired_for_ad(db: Session, ad_id: int, now: datetime) -> int:
    res = db.execute(
        update(AdBoost)
        .where(AdBoost.ad_id == ad_id, AdBoost.is_active.is_(True), AdBoost.end_date <= now)
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


def insert_boost_if_free(
    db: Session,
    *,
    ad_id: int,
    offer_id: int,
    user_id: int,
    start: datetime,
    end: datetime,
    amount_paid: Decimal,
    transaction_id: str,
    payment_method: str,
) -> int | None:
    """
    INSERT ... SELECT ... WHERE NOT EXISTS (active boost on the ad).
    Returns the new boost id, or None when the ad already has an active boost.
    """
    boosts = AdBoost.__table__
    active = select(boosts.c.id).where(boosts.c.ad_id == ad_id, boosts.c.is_active.is_(True)).correlate(None)
    source = select(
        literal(ad_id),
        literal(offer_id),
        literal(user_id),
        literal(start, boosts.c.start_date.type),
        literal(end, boosts.c.end_date.type),
        literal(True),
        literal(PAYMENT_COMPLETED),
        literal(payment_method),
        literal(transaction_id),
        literal(amount_paid, boosts.c.amount_paid.type),
        literal(start, boosts.c.created_at.type),
        literal(start, boosts.c.updated_at.type),
    ).where(~active.exists())
    stmt = (
        insert(boosts)
        .from_select(
            [
                boosts.c.ad_id,
                boosts.c.boost_offer_id,
                boosts.c.user_id,
                boosts.c.start_date,
                boosts.c.end_date,
                boosts.c.is_active,
                boosts.c.payment_status,
                boosts.c.payment_method,
                boosts.c.transaction_id,
                boosts.c.amount_paid,
                boosts.c.created_at,
                boosts.c.updated_at,
            ],
            source,
        )
        .returning(boosts.c.id)
    )
    return db.execute(stmt).scalar_one_or_none()


def refresh_ad_flag(db: Session, ad_id: int, now: datetime | None = None) -> bool:
    """Recompute ads.is_boosted from the boosts that are still running."""
    boosted = current_boost(db, ad_id, now) is not None
    db.execute(
        update(Ad)
        .where(Ad.id == ad_id)
        .values(is_boosted=boosted, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return boosted


def boost_window(start: datetime, duration_days: int) -> tuple[datetime, datetime]:
    return start, start + timedelta(days=duration_days)


def boosted_ads_page(db: Session, page: int, limit: int) -> tuple[list[tuple[Ad, AdBoost, BoostOffer]], int]:
    now = utcnow()
    conds = (
        Ad.status == AD_VALIDATED,
        Ad.is_boosted.is_(True),
        AdBoost.is_active.is_(True),
        AdBoost.end_date > now,
    )
    total = db.execute(
        select(func.count(AdBoost.id)).select_from(Ad).join(AdBoost, AdBoost.ad_id == Ad.id).where(*conds)
    ).scalar_one()
    rows = db.execute(
        select(Ad, AdBoost, BoostOffer)
        .join(AdBoost, AdBoost.ad_id == Ad.id)
        .join(BoostOffer, BoostOffer.id == AdBoost.boost_offer_id)
        .where(*conds)
        .order_by(BoostOffer.position_priority.desc(), Ad.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return [tuple(r) for r in rows], total


def boost_history(db: Session, user_id: int) -> list[tuple[AdBoost, Ad, BoostOffer]]:
    rows = db.execute(
        select(AdBoost, Ad, BoostOffer)
        .join(Ad, Ad.id == AdBoost.ad_id)
        .join(BoostOffer, BoostOffer.id == AdBoost.boost_offer_id)
        .where(AdBoost.user_id == user_id)
        .order_by(AdBoost.created_at.desc(), AdBoost.id.desc())
    ).all()
    return [tuple(r) for r in rows]
