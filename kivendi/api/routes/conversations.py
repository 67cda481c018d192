"""Chat API: conversations, message history, read receipts and blocks."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from kivendi.api.dependencies import get_current_user_id
from kivendi.db.session import get_db
from kivendi.services import chat

router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


class BlockIn(BaseModel):
    reason: str | None = Field(None, max_length=255)


@router.post("/ad/{ad_id}")
def get_or_create_conversation(
    ad_id: int,
    response: Response,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Open (or reuse) the caller's conversation with the ad's seller."""
    conv, created = chat.get_or_create_conversation(db, ad_id, user_id)
    response.status_code = 201 if created else 200
    return chat.conversation_to_dict(conv)


@router.get("/list")
def list_conversations(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return chat.list_conversations(db, user_id)


@router.get("/{conversation_id}/messages")
def get_messages(conversation_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """History, oldest first."""
    return [chat.message_to_dict(m) for m in chat.get_messages(db, conversation_id, user_id)]


@router.patch("/{conversation_id}/messages/read")
def mark_read(conversation_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    updated = chat.mark_messages_read(db, conversation_id, user_id)
    return {"ok": True, "updated": updated}


@router.post("/{conversation_id}/block")
def block(
    conversation_id: int,
    body: BlockIn | None = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    chat.block_in_conversation(db, conversation_id, user_id, body.reason if body else None)
    return {"ok": True}


@router.delete("/{conversation_id}/unblock")
def unblock(conversation_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return {"ok": True, "removed": chat.unblock_in_conversation(db, conversation_id, user_id)}


@router.get("/{conversation_id}/block-status")
def block_status(conversation_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return chat.block_status(db, conversation_id, user_id)
