"""
In-app notifications (per-user inbox) and notification preferences.

Rows are written inside the caller's transaction; ``publish`` pushes the stored
row to any open /ws/notifications sockets after commit.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from kivendi.core.errors import NotFound
from kivendi.db.base import utcnow
from kivendi.db.models import Notification, NotificationPreferences
from kivendi.db.session import SessionLocal
from kivendi.realtime.hub import inbox_hub

logger = logging.getLogger(__name__)

PREFERENCE_FIELDS = (
    "push_notifications",
    "email_notifications",
    "message_notifications",
    "offer_notifications",
    "boost_notifications",
)


def notification_to_dict(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "user_id": n.user_id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "data": n.data or {},
        "is_read": n.is_read,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def add_notification(
    db: Session,
    user_id: int,
    type_: str,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> Notification:
    n = Notification(user_id=user_id, type=type_, title=title, message=message, data=data or {}, created_at=utcnow())
    db.add(n)
    db.flush()
    return n


async def publish(n: Notification) -> None:
    await inbox_hub.send(n.user_id, {"type": "notification", "notification": notification_to_dict(n)})


async def notify(user_id: int, type_: str, title: str, message: str, data: dict[str, Any] | None = None) -> None:
    """Store and publish a notification in its own transaction. Failures are logged, not raised."""
    db = SessionLocal()
    try:
        n = add_notification(db, user_id, type_, title, message, data)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("Notification for user %s (%s) not stored: %s", user_id, type_, e)
        return
    finally:
        db.close()
    await publish(n)


def list_notifications(
    db: Session, user_id: int, page: int, limit: int, unread_only: bool = False
) -> tuple[list[Notification], int]:
    conds = [Notification.user_id == user_id]
    if unread_only:
        conds.append(Notification.is_read.is_(False))
    total = db.execute(select(func.count(Notification.id)).where(*conds)).scalar_one()
    rows = db.execute(
        select(Notification)
        .where(*conds)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars()
    return list(rows), total


def mark_read(db: Session, user_id: int, notification_id: int) -> Notification:
    n = db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    ).scalar_one_or_none()
    if n is None:
        raise NotFound("notification not found")
    n.is_read = True
    db.commit()
    return n


def mark_all_read(db: Session, user_id: int) -> int:
    res = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0


def unread_count(db: Session, user_id: int) -> int:
    return db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
    ).scalar_one()


def delete_notification(db: Session, user_id: int, notification_id: int) -> None:
    res = db.execute(
        delete(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    if not res.rowcount:
        db.rollback()
        raise NotFound("notification not found")
    db.commit()


def get_preferences(db: Session, user_id: int) -> NotificationPreferences | None:
    return db.execute(
        select(NotificationPreferences).where(NotificationPreferences.user_id == user_id)
    ).scalar_one_or_none()


def get_or_create_preferences(db: Session, user_id: int) -> NotificationPreferences:
    prefs = get_preferences(db, user_id)
    if prefs is None:
        prefs = NotificationPreferences(user_id=user_id, **{f: True for f in PREFERENCE_FIELDS})
        db.add(prefs)
        db.commit()
    return prefs


def update_preferences(db: Session, user_id: int, changes: dict[str, bool]) -> NotificationPreferences:
    prefs = get_or_create_preferences(db, user_id)
    for name, value in changes.items():
        if name in PREFERENCE_FIELDS and value is not None:
            setattr(prefs, name, bool(value))
    prefs.updated_at = utcnow()
    db.commit()
    return prefs


def preferences_to_dict(prefs: NotificationPreferences | None) -> dict[str, bool]:
    if prefs is None:
        return {f: True for f in PREFERENCE_FIELDS}
    return {f: bool(getattr(prefs, f)) for f in PREFERENCE_FIELDS}
