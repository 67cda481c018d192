"""Notifications API: device tokens, inbox and preferences."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from kivendi.api.dependencies import get_current_user_id
from kivendi.db.session import get_db
from kivendi.services import notifications
from kivendi.services.push import register_device_token

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


class RegisterTokenIn(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    device_type: str = Field(..., max_length=16)


class PreferencesIn(BaseModel):
    push_notifications: bool | None = None
    email_notifications: bool | None = None
    message_notifications: bool | None = None
    offer_notifications: bool | None = None
    boost_notifications: bool | None = None


@router.post("/register-token")
def register_token(
    body: RegisterTokenIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Register this installation for push; a token moves to the latest user who registers it."""
    row = register_device_token(db, user_id, body.token, body.device_type)
    return {"ok": True, "id": row.id, "device_type": row.device_type}


@router.get("")
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    rows, total = notifications.list_notifications(db, user_id, page, limit, unread_only)
    return {
        "notifications": [notifications.notification_to_dict(n) for n in rows],
        "total_count": total,
        "page": page,
        "limit": limit,
    }


@router.get("/unread-count")
def unread_count(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return {"unread_count": notifications.unread_count(db, user_id)}


@router.get("/preferences")
def get_preferences(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return notifications.preferences_to_dict(notifications.get_or_create_preferences(db, user_id))


@router.put("/preferences")
def put_preferences(
    body: PreferencesIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    prefs = notifications.update_preferences(db, user_id, body.model_dump(exclude_none=True))
    return notifications.preferences_to_dict(prefs)


@router.patch("/mark-all-read")
def mark_all_read(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return {"ok": True, "updated": notifications.mark_all_read(db, user_id)}


@router.patch("/{notification_id}")
def mark_read(notification_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return notifications.notification_to_dict(notifications.mark_read(db, user_id, notification_id))


@router.delete("/{notification_id}", status_code=204)
def delete_notification(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    notifications.delete_notification(db, user_id, notification_id)
    return Response(status_code=204)
