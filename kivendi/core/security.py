from __future__ import annotations

import time

import jwt

from kivendi.core.config import settings

ROLE_USER = "user"
ROLE_ADMIN = "admin"


def issue_token(user_id: int, role: str = ROLE_USER, expires_in: int | None = None) -> str:
    now = int(time.time())
    payload = {
        "user_id": user_id,
        "role": role,
        "iat": now,
        "exp": now + (expires_in if expires_in is not None else settings.jwt_expires_sec),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> dict:
    """Raises jwt.ExpiredSignatureError / jwt.InvalidTokenError."""
    payload = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    if payload.get("user_id") is None:
        raise jwt.InvalidTokenError("missing user_id")
    return payload


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def optional_claims(authorization: str | None) -> dict | None:
    token = bearer_token(authorization)
    if not token:
        return None
    try:
        return decode_token(token)
    except jwt.InvalidTokenError:
        return None
