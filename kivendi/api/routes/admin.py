"""Admin console: payment ledger, boosts, offer catalog and maintenance mode."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kivendi.api.dependencies import get_orchestrator, require_admin
from kivendi.api.schemas import AdBoostOut, BoostOfferOut
from kivendi.core.errors import NotFound
from kivendi.db.base import utcnow
from kivendi.db.models import AdBoost, BoostOffer, Transaction
from kivendi.db.session import get_db
from kivendi.services import maintenance
from kivendi.services.boost_orchestrator import BoostOrchestrator, deactivate_boost

router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class TransactionOut(BaseModel):
    id: int
    transaction_id: str
    boost_id: int | None
    ad_id: int | None
    user_id: int | None
    amount: float
    status: str
    state: str | None
    verified_at: datetime
    created_at: datetime


class TransactionsPage(BaseModel):
    transactions: list[TransactionOut]
    total_count: int
    page: int
    limit: int


class CreateOfferIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str = ""
    duration_days: int = Field(..., ge=1)
    price: float = Field(..., gt=0)
    position_priority: int = 0
    features: dict = Field(default_factory=dict)
    color: str = Field("#FFD700", max_length=16)
    is_active: bool = True
    display_order: int = 0


class MaintenanceIn(BaseModel):
    is_active: bool | None = None
    title: str | None = Field(None, max_length=255)
    message: str | None = None
    allow_admin_access: bool | None = None
    allowed_ip_addresses: list[str] | None = None


def _transaction_out(t: Transaction) -> TransactionOut:
    return TransactionOut(
        id=t.id,
        transaction_id=t.transaction_id,
        boost_id=t.boost_id,
        ad_id=t.ad_id,
        user_id=t.user_id,
        amount=float(t.amount),
        status=t.status,
        state=t.state,
        verified_at=t.verified_at,
        created_at=t.created_at,
    )


def _boost_out(b: AdBoost) -> AdBoostOut:
    return AdBoostOut.model_validate(b)


@router.get("/transactions", response_model=TransactionsPage)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
):
    conds = [Transaction.status == status] if status else []
    total = db.execute(select(func.count(Transaction.id)).where(*conds)).scalar_one()
    rows = db.execute(
        select(Transaction)
        .where(*conds)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars()
    return TransactionsPage(
        transactions=[_transaction_out(t) for t in rows], total_count=total, page=page, limit=limit
    )


@router.get("/boosts", response_model=list[AdBoostOut])
def list_active_boosts(db: Session = Depends(get_db)):
    rows = db.execute(
        select(AdBoost).where(AdBoost.is_active.is_(True)).order_by(AdBoost.end_date.asc())
    ).scalars()
    return [_boost_out(b) for b in rows]


@router.post("/boosts/{boost_id}/deactivate", response_model=AdBoostOut)
def deactivate(boost_id: int, db: Session = Depends(get_db)):
    return _boost_out(deactivate_boost(db, boost_id))


@router.post("/boosts/{boost_id}/refund", response_model=AdBoostOut)
async def refund(boost_id: int, orchestrator: BoostOrchestrator = Depends(get_orchestrator)):
    """Ask KKiaPay to refund the boost payment, then close the boost."""
    return _boost_out(await orchestrator.refund(boost_id))


@router.post("/boost-offers", response_model=BoostOfferOut, status_code=201)
def create_offer(body: CreateOfferIn, db: Session = Depends(get_db)):
    now = utcnow()
    offer = BoostOffer(**body.model_dump(), created_at=now, updated_at=now)
    db.add(offer)
    db.commit()
    return offer


@router.patch("/boost-offers/{offer_id}/toggle", response_model=BoostOfferOut)
def toggle_offer(offer_id: int, db: Session = Depends(get_db)):
    offer = db.get(BoostOffer, offer_id)
    if offer is None:
        raise NotFound("boost offer not found")
    offer.is_active = not offer.is_active
    offer.updated_at = utcnow()
    db.commit()
    return offer


@router.get("/maintenance")
def get_maintenance(db: Session = Depends(get_db)):
    return maintenance.state_to_dict(maintenance.get_or_create_state(db))


@router.put("/maintenance")
def put_maintenance(body: MaintenanceIn, db: Session = Depends(get_db)):
    state = maintenance.update_state(db, body.model_dump(exclude_none=True))
    return maintenance.state_to_dict(state)
