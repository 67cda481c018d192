from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BoostOfferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    duration_days: int
    price: float
    position_priority: int
    features: dict = Field(default_factory=dict)
    color: str
    is_active: bool
    display_order: int
    created_at: datetime
    updated_at: datetime


class AdBoostOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ad_id: int
    boost_offer_id: int
    user_id: int
    start_date: datetime
    end_date: datetime
    is_active: bool
    payment_status: str
    payment_method: str
    transaction_id: str | None
    amount_paid: float
