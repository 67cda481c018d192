from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from kivendi.api.dependencies import get_chat_service
from kivendi.core.errors import Forbidden, KivendiError, NotFound
from kivendi.core.security import bearer_token, decode_token
from kivendi.realtime.hub import chat_hub, inbox_hub
from kivendi.services.chat import ChatService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/ws", tags=["ws"])

CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_NOT_FOUND = 4404


def _authenticate(ws: WebSocket) -> int | None:
    token = bearer_token(ws.headers.get("authorization")) or ws.query_params.get("token") or ""
    try:
        return int(decode_token(token)["user_id"])
    except Exception:
        return None


async def _send_error(ws: WebSocket, message: str, code: str | None) -> None:
    await ws.send_text(json.dumps({"type": "error", "error": message, "code": code}, ensure_ascii=False))


@router.websocket("/chat/{conversation_id}")
async def chat_endpoint(ws: WebSocket, conversation_id: int, chat: ChatService = Depends(get_chat_service)):
    user_id = _authenticate(ws)
    if not user_id:
        await ws.close(code=CLOSE_UNAUTHORIZED)
        return
    try:
        chat.check_access(conversation_id, user_id)
    except NotFound:
        await ws.close(code=CLOSE_NOT_FOUND)
        return
    except Forbidden:
        await ws.close(code=CLOSE_FORBIDDEN)
        return

    await ws.accept()
    await chat_hub.connect(conversation_id, ws)
    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await _send_error(ws, "message must be valid JSON", "validation")
                continue
            try:
                await chat.post_message(conversation_id, user_id, frame)
            except KivendiError as e:
                await _send_error(ws, e.message, e.code)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Chat socket for conversation %s crashed", conversation_id)
        try:
            await ws.close()
        except Exception:
            pass
    finally:
        await chat_hub.disconnect(conversation_id, ws)


@router.websocket("/notifications")
async def notifications_endpoint(ws: WebSocket):
    user_id = _authenticate(ws)
    if not user_id:
        await ws.close(code=CLOSE_UNAUTHORIZED)
        return

    await ws.accept()
    await inbox_hub.connect(user_id, ws)

    try:
        # keep connection open; clients only listen
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception:
        try:
            await ws.close()
        except Exception:
            pass
    finally:
        await inbox_hub.disconnect(user_id, ws)
