"""Boost API: offers catalog, purchase, status, boosted ads and history."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from kivendi.api.dependencies import get_current_user_id, get_orchestrator
from kivendi.api.schemas import BoostOfferOut
from kivendi.core.errors import NotFound
from kivendi.db.models import BoostOffer
from kivendi.db.session import get_db
from kivendi.services import boost_store
from kivendi.services.boost_orchestrator import BoostOrchestrator

router = APIRouter(prefix="/api/v1", tags=["boosts"])


class PurchaseBoostIn(BaseModel):
    offer_id: int = Field(..., ge=1)
    transaction_id: str = Field(..., min_length=1, max_length=128)
    payment_method: str | None = Field(None, max_length=32)


class PurchaseBoostOut(BaseModel):
    message: str
    boost_id: int
    ad_id: int
    offer_id: int
    transaction_id: str
    start_date: datetime
    end_date: datetime
    amount_paid: float


class BoostStatusOut(BaseModel):
    is_boosted: bool
    boost_id: int | None = None
    end_date: datetime | None = None
    offer_name: str | None = None
    offer_color: str | None = None
    position_priority: int | None = None


class BoostHistoryItem(BaseModel):
    id: int
    ad_id: int
    ad_title: str
    ad_image: str | None
    start_date: datetime
    end_date: datetime
    is_active: bool
    payment_status: str
    payment_method: str
    amount_paid: float
    transaction_id: str | None
    created_at: datetime
    offer_name: str
    duration_days: int
    offer_color: str


class BoostedAdOut(BaseModel):
    id: int
    title: str
    price: float
    city: str | None
    images: list[str]
    boost_id: int
    boost_end_date: datetime
    offer_name: str
    offer_color: str
    position_priority: int


class BoostedAdsPage(BaseModel):
    ads: list[BoostedAdOut]
    total_count: int
    page: int
    limit: int


@router.get("/boost-offers", response_model=list[BoostOfferOut])
def list_boost_offers(db: Session = Depends(get_db)):
    """Active offers, in display order."""
    return boost_store.list_active_offers(db)


@router.get("/boost-offers/{offer_id}", response_model=BoostOfferOut)
def get_boost_offer(offer_id: int, db: Session = Depends(get_db)):
    offer = boost_store.get_active_offer(db, offer_id)
    if offer is None:
        raise NotFound("boost offer not found")
    return offer


@router.post("/ads/{ad_id}/boost", response_model=PurchaseBoostOut, status_code=201)
async def purchase_boost(
    ad_id: int,
    body: PurchaseBoostIn,
    user_id: int = Depends(get_current_user_id),
    orchestrator: BoostOrchestrator = Depends(get_orchestrator),
):
    """Verify the KKiaPay transaction and activate the boost."""
    result = await orchestrator.purchase(
        user_id, ad_id, body.offer_id, body.transaction_id, body.payment_method
    )
    return PurchaseBoostOut(
        message="Boost activé avec succès",
        boost_id=result.boost_id,
        ad_id=result.ad_id,
        offer_id=result.offer_id,
        transaction_id=result.transaction_id,
        start_date=result.start_date,
        end_date=result.end_date,
        amount_paid=float(result.amount_paid),
    )


@router.get("/ads/boosted", response_model=BoostedAdsPage)
def list_boosted_ads(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    rows, total = boost_store.boosted_ads_page(db, page, limit)
    ads = [
        BoostedAdOut(
            id=ad.id,
            title=ad.title,
            price=float(ad.price),
            city=ad.city,
            images=list(ad.images or []),
            boost_id=boost.id,
            boost_end_date=boost.end_date,
            offer_name=offer.name,
            offer_color=offer.color,
            position_priority=offer.position_priority,
        )
        for ad, boost, offer in rows
    ]
    return BoostedAdsPage(ads=ads, total_count=total, page=page, limit=limit)


@router.get("/ads/{ad_id}/boost-status", response_model=BoostStatusOut)
def boost_status(ad_id: int, db: Session = Depends(get_db)):
    boost = boost_store.current_boost(db, ad_id)
    if boost is None:
        return BoostStatusOut(is_boosted=False)
    offer = db.get(BoostOffer, boost.boost_offer_id)
    return BoostStatusOut(
        is_boosted=True,
        boost_id=boost.id,
        end_date=boost.end_date,
        offer_name=offer.name if offer else None,
        offer_color=offer.color if offer else None,
        position_priority=offer.position_priority if offer else None,
    )


@router.get("/boosts/history", response_model=list[BoostHistoryItem])
def boost_history(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """Caller's boosts, newest first."""
    return [
        BoostHistoryItem(
            id=boost.id,
            ad_id=ad.id,
            ad_title=ad.title,
            ad_image=(ad.images or [None])[0],
            start_date=boost.start_date,
            end_date=boost.end_date,
            is_active=boost.is_active,
            payment_status=boost.payment_status,
            payment_method=boost.payment_method,
            amount_paid=float(boost.amount_paid),
            transaction_id=boost.transaction_id,
            created_at=boost.created_at,
            offer_name=offer.name,
            duration_days=offer.duration_days,
            offer_color=offer.color,
        )
        for boost, ad, offer in boost_store.boost_history(db, user_id)
    ]
