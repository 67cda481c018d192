"""
Shared FastAPI dependencies: authentication and the service objects wired at startup.
"""
from __future__ import annotations

import jwt
from fastapi import Depends, Header, HTTPException
from fastapi.requests import HTTPConnection

from kivendi.core.security import ROLE_ADMIN, bearer_token, decode_token
from kivendi.services.boost_orchestrator import BoostOrchestrator
from kivendi.services.chat import ChatService
from kivendi.services.payment_gateway import KKiaPayClient
from kivendi.services.push import PushService
from kivendi.services.storage import S3Storage


def _claims(authorization: str | None) -> dict:
    if not authorization:
        raise HTTPException(status_code=401, detail="missing authorization")

    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="invalid authorization")

    try:
        return decode_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="invalid token")


def get_current_user_id(
    authorization: str | None = Header(None),
) -> int:
    """
    Extract and validate the user id from the bearer JWT.

    Usage:
        @router.get("/endpoint")
        async def endpoint(user_id: int = Depends(get_current_user_id)):
            ...
    """
    payload = _claims(authorization)
    try:
        return int(payload["user_id"])
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="invalid token payload")


def require_admin(
    authorization: str | None = Header(None),
) -> int:
    payload = _claims(authorization)
    if payload.get("role") != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="admin access required")
    return int(payload["user_id"])


def get_gateway(conn: HTTPConnection) -> KKiaPayClient:
    return conn.app.state.gateway


def get_storage(conn: HTTPConnection) -> S3Storage:
    return conn.app.state.storage


def get_push_service(conn: HTTPConnection) -> PushService:
    return conn.app.state.push


def get_orchestrator(gateway: KKiaPayClient = Depends(get_gateway)) -> BoostOrchestrator:
    return BoostOrchestrator(gateway, sandbox=gateway.sandbox)


def get_chat_service(
    storage: S3Storage = Depends(get_storage),
    push: PushService = Depends(get_push_service),
) -> ChatService:
    return ChatService(storage, push)
