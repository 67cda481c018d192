"""
Push delivery over Firebase Cloud Messaging.

One FCM message per device token. Tokens FCM reports as unregistered or
invalid are deleted. An aggregate error is raised only when every token failed.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from kivendi.core.errors import ValidationFailed
from kivendi.db.base import utcnow
from kivendi.db.models import (
    DEVICE_TYPES,
    MESSAGE_IMAGE,
    MESSAGE_OFFER,
    DeviceToken,
    Message,
)
from kivendi.db.session import SessionLocal, dialect_insert
from kivendi.services.notifications import get_preferences

logger = logging.getLogger(__name__)


class PushError(Exception):
    pass


class InvalidTokenError(PushError):
    """FCM says the token is not registered or is malformed."""


class PushDeliveryError(PushError):
    """Every token of the recipient failed."""


class PushSender(Protocol):
    async def send(self, token: str, title: str, body: str, data: dict[str, str]) -> str: ...


class FirebasePushSender:
    def __init__(self, credentials_file: str) -> None:
        import firebase_admin
        from firebase_admin import credentials

        try:
            self._app = firebase_admin.get_app()
        except ValueError:
            self._app = firebase_admin.initialize_app(credentials.Certificate(credentials_file))
        logger.info("Firebase initialised from %s", credentials_file)

    def _build(self, token: str, title: str, body: str, data: dict[str, str]):
        from firebase_admin import messaging

        return messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data=data,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(sound="default", channel_id="chat_messages"),
            ),
            apns=messaging.APNSConfig(
                headers={"apns-priority": "10"},
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(
                        alert=messaging.ApsAlert(title=title, body=body),
                        sound="default",
                        badge=1,
                    )
                ),
            ),
        )

    async def send(self, token: str, title: str, body: str, data: dict[str, str]) -> str:
        from firebase_admin import exceptions, messaging

        message = self._build(token, title, body, data)
        try:
            return await asyncio.to_thread(messaging.send, message, False, self._app)
        except (messaging.UnregisteredError, exceptions.InvalidArgumentError) as e:
            raise InvalidTokenError(str(e)) from e
        except exceptions.FirebaseError as e:
            raise PushError(str(e)) from e


def build_sender(credentials_file: str) -> PushSender | None:
    if not credentials_file or not os.path.exists(credentials_file):
        logger.warning("Firebase credentials %r not found, push notifications disabled", credentials_file)
        return None
    return FirebasePushSender(credentials_file)


def _format_amount(amount: Decimal | float | int | None) -> str:
    if amount is None:
        return "0"
    text = f"{Decimal(str(amount)):f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_message_body(message: Message) -> str:
    if message.message_type == MESSAGE_IMAGE:
        return "📷 Image"
    if message.message_type == MESSAGE_OFFER:
        return f"Offre: {_format_amount(message.offer_amount)}"
    return message.text or ""


@dataclass
class PushResult:
    sent: int = 0
    failed: int = 0
    reaped: list[str] = field(default_factory=list)


def _short(token: str) -> str:
    return token[:12] + "..." if len(token) > 12 else token


class PushService:
    def __init__(self, sender: PushSender | None, session_factory=SessionLocal) -> None:
        self.sender = sender
        self._session_factory = session_factory

    @property
    def enabled(self) -> bool:
        return self.sender is not None

    def _load_tokens(self, user_id: int) -> list[str] | None:
        """None when the user opted out of push or message notifications."""
        db = self._session_factory()
        try:
            prefs = get_preferences(db, user_id)
            if prefs is not None and not (prefs.push_notifications and prefs.message_notifications):
                return None
            return list(db.execute(select(DeviceToken.token).where(DeviceToken.user_id == user_id)).scalars())
        finally:
            db.close()

    def _reap(self, token: str) -> None:
        db = self._session_factory()
        try:
            db.execute(delete(DeviceToken).where(DeviceToken.token == token))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def send_chat_message(
        self,
        recipient_id: int,
        sender_id: int,
        sender_name: str,
        message: Message,
        conversation_id: int,
        ad_id: int,
    ) -> PushResult:
        result = PushResult()
        if self.sender is None:
            logger.debug("Push disabled, skipping message %s for user %s", message.id, recipient_id)
            return result

        tokens = await asyncio.to_thread(self._load_tokens, recipient_id)
        if tokens is None:
            logger.info("Push skipped for user %s: disabled in preferences", recipient_id)
            return result
        if not tokens:
            return result

        body = format_message_body(message)
        data = {
            "type": "chat_message",
            "conversation_id": str(conversation_id),
            "ad_id": str(ad_id),
            "sender_id": str(sender_id),
            "sender_name": sender_name,
            "message_body": body,
            "chat_message_type": message.message_type,
            "title": sender_name,
            "body": body,
        }
        for token in tokens:
            try:
                await self.sender.send(token, sender_name, body, data)
                result.sent += 1
            except InvalidTokenError as e:
                result.failed += 1
                logger.info("Push token %s rejected (%s), deleting", _short(token), e)
                try:
                    await asyncio.to_thread(self._reap, token)
                except Exception:
                    logger.exception("Could not delete push token %s", _short(token))
                else:
                    result.reaped.append(token)
            except PushError as e:
                result.failed += 1
                logger.warning("Push to token %s failed: %s", _short(token), e)

        logger.info(
            "Push for user %s: %s sent, %s failed, %s reaped",
            recipient_id, result.sent, result.failed, len(result.reaped),
        )
        if result.sent == 0:
            raise PushDeliveryError(f"all {len(tokens)} push tokens failed for user {recipient_id}")
        return result


def register_device_token(db: Session, user_id: int, token: str, device_type: str) -> DeviceToken:
    """Upsert on token; the latest registration owns it."""
    token = (token or "").strip()
    if not token:
        raise ValidationFailed("token is required")
    if device_type not in DEVICE_TYPES:
        raise ValidationFailed("device_type must be one of: android, ios, web")
    now = utcnow()
    stmt = dialect_insert(db, DeviceToken).values(
        user_id=user_id, token=token, device_type=device_type, created_at=now, updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[DeviceToken.token],
        set_={
            "user_id": stmt.excluded.user_id,
            "device_type": stmt.excluded.device_type,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)
    db.commit()
    return db.execute(
        select(DeviceToken).where(DeviceToken.token == token).execution_options(populate_existing=True)
    ).scalar_one()
