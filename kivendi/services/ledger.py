"""
Transaction ledger: one row per KKiaPay transaction id.

The unique index on transaction_id is what lets the purchase call and the
webhook converge on the same row whatever order they arrive in.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kivendi.db.base import utcnow
from kivendi.db.models import Transaction
from kivendi.db.session import SessionLocal, dialect_insert

logger = logging.getLogger(__name__)


def record_verification(
    db: Session,
    *,
    transaction_id: str,
    amount: Decimal,
    status: str,
    state: str | None,
    raw: dict[str, Any] | None,
    boost_id: int | None = None,
    ad_id: int | None = None,
    user_id: int | None = None,
) -> None:
    """
    Upsert the ledger row for ``transaction_id`` inside the caller's transaction.
    Known links (boost/ad/user) are never overwritten with null by a later call.
    """
    now = utcnow()
    stmt = dialect_insert(db, Transaction).values(
        transaction_id=transaction_id,
        boost_id=boost_id,
        ad_id=ad_id,
        user_id=user_id,
        amount=amount,
        status=status,
        state=state,
        raw_response=raw,
        verified_at=now,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[Transaction.transaction_id],
        set_={
            "boost_id": func.coalesce(excluded.boost_id, Transaction.boost_id),
            "ad_id": func.coalesce(excluded.ad_id, Transaction.ad_id),
            "user_id": func.coalesce(excluded.user_id, Transaction.user_id),
            "amount": excluded.amount,
            "status": excluded.status,
            "state": excluded.state,
            "raw_response": excluded.raw_response,
            "verified_at": excluded.verified_at,
            "updated_at": excluded.updated_at,
        },
    )
    db.execute(stmt)


def record_verification_now(**kwargs: Any) -> None:
    """Same as record_verification, committed in its own short transaction."""
    db = SessionLocal()
    try:
        record_verification(db, **kwargs)
        db.commit()
        logger.info("Ledger: recorded %s status=%s", kwargs.get("transaction_id"), kwargs.get("status"))
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def link_boost(db: Session, transaction_id: str, boost_id: int) -> None:
    row = db.execute(
        select(Transaction).where(Transaction.transaction_id == transaction_id)
    ).scalar_one_or_none()
    if row is not None:
        row.boost_id = boost_id
        row.updated_at = utcnow()


def get_transaction(db: Session, transaction_id: str) -> Transaction | None:
    return db.execute(
        select(Transaction).where(Transaction.transaction_id == transaction_id)
    ).scalar_one_or_none()
