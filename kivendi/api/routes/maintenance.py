from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from kivendi.db.session import get_db
from kivendi.services.maintenance import current_state

router = APIRouter(prefix="/api/v1/maintenance", tags=["maintenance"])


@router.get("/status")
def maintenance_status(db: Session = Depends(get_db)):
    """Public probe; always reachable, even during maintenance."""
    state = current_state(db)
    if state is None:
        return {"maintenance_mode": False, "title": None, "message": None}
    return {
        "maintenance_mode": state.is_active,
        "title": state.title if state.is_active else None,
        "message": state.message if state.is_active else None,
    }
