from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from kivendi.core.security import ROLE_ADMIN, optional_claims
from kivendi.db.models import MaintenanceMode
from kivendi.db.session import SessionLocal
from kivendi.services.maintenance import ADMIN_PREFIX, client_ip, current_state, is_exempt

logger = logging.getLogger(__name__)


def _load_state() -> MaintenanceMode | None:
    db = SessionLocal()
    try:
        return current_state(db)
    finally:
        db.close()


class MaintenanceMiddleware(BaseHTTPMiddleware):
    """503 for non-exempt HTTP traffic while maintenance mode is on."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or is_exempt(path):
            return await call_next(request)

        state = await run_in_threadpool(_load_state)
        if state is None or not state.is_active:
            return await call_next(request)

        if state.allow_admin_access:
            claims = optional_claims(request.headers.get("authorization"))
            if path.startswith(ADMIN_PREFIX) or (claims and claims.get("role") == ROLE_ADMIN):
                return await call_next(request)

        ip = client_ip(request.headers, request.client.host if request.client else None)
        if ip and ip in (state.allowed_ip_addresses or []):
            return await call_next(request)

        logger.info("Maintenance: blocked %s %s from %s", request.method, path, ip)
        return JSONResponse(
            status_code=503,
            content={
                "error": state.message,
                "code": "maintenance",
                "maintenance_mode": True,
                "title": state.title,
                "message": state.message,
            },
        )
