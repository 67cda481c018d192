from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from kivendi.db.base import utcnow
from kivendi.db.models import MaintenanceMode

EXEMPT_PATHS = frozenset(
    {
        "/api/v1/admin/login",
        "/api/v1/admin/refresh",
        "/api/v1/maintenance/status",
        "/api/v1/settings/app",
        "/health",
    }
)
ADMIN_PREFIX = "/api/v1/admin"


def current_state(db: Session) -> MaintenanceMode | None:
    return db.execute(select(MaintenanceMode).order_by(MaintenanceMode.id.desc()).limit(1)).scalar_one_or_none()


def get_or_create_state(db: Session) -> MaintenanceMode:
    state = current_state(db)
    if state is None:
        state = MaintenanceMode(is_active=False, allowed_ip_addresses=[], updated_at=utcnow())
        db.add(state)
        db.commit()
    return state


def update_state(db: Session, changes: Mapping[str, Any]) -> MaintenanceMode:
    state = get_or_create_state(db)
    for name in ("is_active", "title", "message", "allow_admin_access"):
        if changes.get(name) is not None:
            setattr(state, name, changes[name])
    if changes.get("allowed_ip_addresses") is not None:
        state.allowed_ip_addresses = [ip.strip() for ip in changes["allowed_ip_addresses"] if ip and ip.strip()]
    state.updated_at = utcnow()
    db.commit()
    return state


def state_to_dict(state: MaintenanceMode | None) -> dict[str, Any]:
    if state is None:
        return {"is_active": False, "title": "", "message": "", "allow_admin_access": True, "allowed_ip_addresses": []}
    return {
        "is_active": state.is_active,
        "title": state.title,
        "message": state.message,
        "allow_admin_access": state.allow_admin_access,
        "allowed_ip_addresses": list(state.allowed_ip_addresses or []),
        "updated_at": state.updated_at.isoformat() if state.updated_at else None,
    }


def _strip_port(addr: str) -> str:
    addr = addr.strip()
    if addr.startswith("["):
        # [::1]:8080
        return addr[1:].split("]", 1)[0]
    if addr.count(":") == 1:
        return addr.split(":", 1)[0]
    return addr


def client_ip(headers: Mapping[str, str], remote_addr: str | None) -> str:
    """X-Real-IP, then the first X-Forwarded-For hop, then the transport address."""
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    forwarded = (headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return _strip_port(remote_addr or "")


def is_exempt(path: str) -> bool:
    return path.rstrip("/") in EXEMPT_PATHS or path in EXEMPT_PATHS
