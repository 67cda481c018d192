"""
Buyer/seller chat: conversations, history, blocks and live message ingestion.

Ingestion order per conversation is insert then broadcast, serialized by a
per-conversation lock so every connected client sees messages in id order.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kivendi.core.errors import Forbidden, NotFound, UpstreamUnavailable, ValidationFailed
from kivendi.db.base import utcnow
from kivendi.db.models import (
    MESSAGE_IMAGE,
    MESSAGE_OFFER,
    MESSAGE_TEXT,
    Ad,
    Conversation,
    Message,
    User,
    UserBlock,
)
from kivendi.db.session import SessionLocal
from kivendi.realtime.hub import RealtimeHub, chat_hub, inbox_hub
from kivendi.services.notifications import notify
from kivendi.services.push import PushError, PushService, format_message_body
from kivendi.services.storage import InvalidImage, S3Storage, StorageError

logger = logging.getLogger(__name__)

MESSAGE_TYPES = (MESSAGE_TEXT, MESSAGE_OFFER, MESSAGE_IMAGE)
MAX_IMAGES = 10

class ConversationLocks:
    """One lock per conversation, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, conversation_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if self._users[conversation_id] == 0:
                del self._users[conversation_id]
                del self._locks[conversation_id]


_conversation_locks = ConversationLocks()


@dataclass
class IncomingMessage:
    message_type: str
    text: str | None = None
    offer_amount: Decimal | None = None
    images: list[str] = field(default_factory=list)


def normalize_sender_id(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationFailed("sender_id must be a numeric user id")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationFailed("sender_id must be a numeric user id")


def parse_frame(frame: Any, user_id: int) -> IncomingMessage:
    """Validate an inbound chat frame {type, sender_id, text?, offer_amount?, images?}."""
    if not isinstance(frame, dict):
        raise ValidationFailed("message must be a JSON object")

    message_type = frame.get("type")
    if message_type not in MESSAGE_TYPES:
        raise ValidationFailed("type must be one of: text, offer, image")

    if frame.get("sender_id") is not None and normalize_sender_id(frame["sender_id"]) != user_id:
        raise Forbidden("sender_id does not match the authenticated user")

    text = frame.get("text")
    if text is not None and not isinstance(text, str):
        raise ValidationFailed("text must be a string")
    text = text.strip() if text else ""

    raw_amount = frame.get("offer_amount")
    amount: Decimal | None = None
    if raw_amount is not None:
        try:
            amount = Decimal(str(raw_amount))
        except InvalidOperation:
            raise ValidationFailed("offer_amount must be a number")
        if not amount.is_finite() or amount <= 0:
            raise ValidationFailed("offer_amount must be positive")

    images = frame.get("images") or []
    if not isinstance(images, list) or not all(isinstance(i, str) and i for i in images):
        raise ValidationFailed("images must be a list of base64 strings")
    if len(images) > MAX_IMAGES:
        raise ValidationFailed(f"at most {MAX_IMAGES} images per message")

    if message_type == MESSAGE_TEXT:
        if not text:
            raise ValidationFailed("text message requires text")
        if amount is not None or images:
            raise ValidationFailed("text message cannot carry an offer or images")
        return IncomingMessage(MESSAGE_TEXT, text=text)
    if message_type == MESSAGE_OFFER:
        if amount is None:
            raise ValidationFailed("offer message requires offer_amount")
        if text or images:
            raise ValidationFailed("offer message cannot carry text or images")
        return IncomingMessage(MESSAGE_OFFER, offer_amount=amount)
    if not images:
        raise ValidationFailed("image message requires images")
    if text or amount is not None:
        raise ValidationFailed("image message cannot carry text or an offer")
    return IncomingMessage(MESSAGE_IMAGE, images=images)


def message_to_dict(m: Message) -> dict[str, Any]:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "sender_id": m.sender_id,
        "type": m.message_type,
        "text": m.text,
        "offer_amount": float(m.offer_amount) if m.offer_amount is not None else None,
        "images": list(m.image_urls or []),
        "is_read": m.is_read,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def is_blocked_between(db: Session, a: int, b: int) -> bool:
    return db.execute(
        select(UserBlock.id).where(
            or_(
                and_(UserBlock.blocker_id == a, UserBlock.blocked_id == b),
                and_(UserBlock.blocker_id == b, UserBlock.blocked_id == a),
            )
        ).limit(1)
    ).first() is not None


def get_conversation_for(db: Session, conversation_id: int, user_id: int) -> Conversation:
    conv = db.get(Conversation, conversation_id)
    if conv is None:
        raise NotFound("conversation not found")
    if not conv.has_participant(user_id):
        raise Forbidden("you are not a participant of this conversation")
    return conv


def get_or_create_conversation(db: Session, ad_id: int, buyer_id: int) -> tuple[Conversation, bool]:
    ad = db.get(Ad, ad_id)
    if ad is None:
        raise NotFound("ad not found")
    if ad.user_id == buyer_id:
        raise ValidationFailed("you cannot start a conversation about your own ad")

    existing = db.execute(
        select(Conversation).where(Conversation.ad_id == ad_id, Conversation.buyer_id == buyer_id)
    ).scalar_one_or_none()
    if existing is not None:
        return existing, False

    if is_blocked_between(db, buyer_id, ad.user_id):
        raise Forbidden("you cannot contact this user")

    now = utcnow()
    conv = Conversation(ad_id=ad_id, seller_id=ad.user_id, buyer_id=buyer_id, created_at=now, updated_at=now)
    db.add(conv)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent first contact; the other insert won.
        db.rollback()
        conv = db.execute(
            select(Conversation).where(Conversation.ad_id == ad_id, Conversation.buyer_id == buyer_id)
        ).scalar_one()
        return conv, False
    return conv, True


def conversation_to_dict(conv: Conversation) -> dict[str, Any]:
    return {
        "id": conv.id,
        "ad_id": conv.ad_id,
        "seller_id": conv.seller_id,
        "buyer_id": conv.buyer_id,
        "created_at": conv.created_at.isoformat() if conv.created_at else None,
        "updated_at": conv.updated_at.isoformat() if conv.updated_at else None,
    }


def list_conversations(db: Session, user_id: int) -> list[dict[str, Any]]:
    convs = db.execute(
        select(Conversation, Ad)
        .join(Ad, Ad.id == Conversation.ad_id)
        .where(or_(Conversation.seller_id == user_id, Conversation.buyer_id == user_id))
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
    ).all()
    out = []
    for conv, ad in convs:
        other = db.get(User, conv.other_participant(user_id))
        last = db.execute(
            select(Message).where(Message.conversation_id == conv.id).order_by(Message.id.desc()).limit(1)
        ).scalar_one_or_none()
        unread = db.execute(
            select(func.count(Message.id)).where(
                Message.conversation_id == conv.id,
                Message.sender_id != user_id,
                Message.is_read.is_(False),
            )
        ).scalar_one()
        item = conversation_to_dict(conv)
        item.update(
            {
                "ad_title": ad.title,
                "ad_image": (ad.images or [None])[0],
                "other_user_id": other.id if other else None,
                "other_user_name": other.display_name if other else None,
                "last_message": message_to_dict(last) if last else None,
                "unread_count": unread,
            }
        )
        out.append(item)
    return out


def get_messages(db: Session, conversation_id: int, user_id: int) -> list[Message]:
    get_conversation_for(db, conversation_id, user_id)
    return list(
        db.execute(
            select(Message).where(Message.conversation_id == conversation_id).order_by(Message.id.asc())
        ).scalars()
    )


def mark_messages_read(db: Session, conversation_id: int, user_id: int) -> int:
    get_conversation_for(db, conversation_id, user_id)
    res = db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            Message.is_read.is_(False),
        )
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0


def block_in_conversation(db: Session, conversation_id: int, user_id: int, reason: str | None = None) -> UserBlock:
    conv = get_conversation_for(db, conversation_id, user_id)
    other = conv.other_participant(user_id)
    block = db.execute(
        select(UserBlock).where(UserBlock.blocker_id == user_id, UserBlock.blocked_id == other)
    ).scalar_one_or_none()
    if block is None:
        block = UserBlock(
            blocker_id=user_id, blocked_id=other, conversation_id=conv.id, reason=reason, created_at=utcnow()
        )
        db.add(block)
        db.commit()
        logger.info("User %s blocked user %s (conversation %s)", user_id, other, conv.id)
    return block


def unblock_in_conversation(db: Session, conversation_id: int, user_id: int) -> bool:
    conv = get_conversation_for(db, conversation_id, user_id)
    block = db.execute(
        select(UserBlock).where(
            UserBlock.blocker_id == user_id, UserBlock.blocked_id == conv.other_participant(user_id)
        )
    ).scalar_one_or_none()
    if block is None:
        return False
    db.delete(block)
    db.commit()
    return True


def block_status(db: Session, conversation_id: int, user_id: int) -> dict[str, bool]:
    conv = get_conversation_for(db, conversation_id, user_id)
    other = conv.other_participant(user_id)

    def _exists(blocker: int, blocked: int) -> bool:
        return db.execute(
            select(UserBlock.id).where(UserBlock.blocker_id == blocker, UserBlock.blocked_id == blocked)
        ).first() is not None

    i_blocked = _exists(user_id, other)
    blocked_me = _exists(other, user_id)
    return {"is_blocked": i_blocked or blocked_me, "i_blocked": i_blocked, "blocked_me": blocked_me}


@dataclass
class _SendContext:
    conversation_id: int
    ad_id: int
    recipient_id: int
    sender_name: str


class ChatService:
    def __init__(
        self,
        storage: S3Storage,
        push: PushService,
        hub: RealtimeHub = chat_hub,
        inbox: RealtimeHub = inbox_hub,
        session_factory=SessionLocal,
    ) -> None:
        self.storage = storage
        self.push = push
        self.hub = hub
        self.inbox = inbox
        self._session_factory = session_factory

    def check_access(self, conversation_id: int, user_id: int) -> Conversation:
        """Raises NotFound/Forbidden; a block between the participants is Forbidden."""
        db = self._session_factory()
        try:
            conv = get_conversation_for(db, conversation_id, user_id)
            if is_blocked_between(db, conv.seller_id, conv.buyer_id):
                raise Forbidden("this conversation is blocked")
            return conv
        finally:
            db.close()

    def _send_context(self, conversation_id: int, user_id: int) -> _SendContext:
        db = self._session_factory()
        try:
            conv = get_conversation_for(db, conversation_id, user_id)
            if is_blocked_between(db, conv.seller_id, conv.buyer_id):
                raise Forbidden("this conversation is blocked")
            sender = db.get(User, user_id)
            return _SendContext(
                conversation_id=conv.id,
                ad_id=conv.ad_id,
                recipient_id=conv.other_participant(user_id),
                sender_name=sender.display_name if sender else "Kivendi",
            )
        finally:
            db.close()

    def _insert(self, ctx: _SendContext, user_id: int, incoming: IncomingMessage, urls: list[str]) -> Message:
        db = self._session_factory()
        try:
            now = utcnow()
            m = Message(
                conversation_id=ctx.conversation_id,
                sender_id=user_id,
                message_type=incoming.message_type,
                text=incoming.text if incoming.message_type == MESSAGE_TEXT else None,
                offer_amount=incoming.offer_amount,
                image_urls=urls or None,
                is_read=False,
                created_at=now,
            )
            db.add(m)
            db.execute(
                update(Conversation)
                .where(Conversation.id == ctx.conversation_id)
                .values(updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return m
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _upload_images(self, conversation_id: int, images: list[str]) -> list[str]:
        urls = []
        for blob in images:
            try:
                urls.append(await self.storage.upload_chat_image(conversation_id, blob))
            except InvalidImage as e:
                raise ValidationFailed(str(e))
            except StorageError as e:
                logger.error("Chat image upload failed for conversation %s: %s", conversation_id, e)
                raise UpstreamUnavailable("image upload failed")
        return urls

    async def post_message(self, conversation_id: int, user_id: int, frame: Any) -> dict[str, Any]:
        """Validate, store, broadcast, then notify the other participant."""
        incoming = parse_frame(frame, user_id)
        ctx = self._send_context(conversation_id, user_id)
        urls = await self._upload_images(conversation_id, incoming.images) if incoming.images else []

        async with _conversation_locks.hold(conversation_id):
            message = self._insert(ctx, user_id, incoming, urls)
            payload = message_to_dict(message)
            delivered = await self.hub.send(conversation_id, payload)
        logger.info("Message %s in conversation %s delivered to %s sockets", message.id, conversation_id, delivered)

        await self._notify_recipient(ctx, user_id, message)
        return payload

    async def _notify_recipient(self, ctx: _SendContext, sender_id: int, message: Message) -> None:
        try:
            await self.inbox.send(
                ctx.recipient_id,
                {"type": "new_message_notification", "conversation_id": ctx.conversation_id},
            )
        except Exception as e:
            logger.warning("Inbox event for user %s failed: %s", ctx.recipient_id, e)

        await notify(
            ctx.recipient_id,
            "new_message",
            ctx.sender_name,
            format_message_body(message),
            {
                "conversation_id": ctx.conversation_id,
                "ad_id": ctx.ad_id,
                "message_id": message.id,
                "sender_id": sender_id,
            },
        )

        try:
            await self.push.send_chat_message(
                ctx.recipient_id, sender_id, ctx.sender_name, message, ctx.conversation_id, ctx.ad_id
            )
        except PushError as e:
            logger.warning("Push for message %s not delivered: %s", message.id, e)
        except Exception:
            logger.exception("Push for message %s crashed", message.id)
