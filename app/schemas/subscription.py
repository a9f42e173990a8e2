from __future__ import annotations

from pydantic import BaseModel


class SubscriptionSchema(BaseModel):
    id: str
    account_id: str
    plan_type: str
    price: int
    card_company: str | None = None
    card_number: str | None = None
    status: str
    current_period_start: str
    current_period_end: str
    vet_consultations_remaining: int
    cancelled_at: str | None = None
    created_at: str | None = None


class SubscriptionStatusResponse(BaseModel):
    subscription: SubscriptionSchema | None = None
    isPremium: bool
    isPremiumPlus: bool


class CancelResponse(BaseModel):
    success: bool
    message: str
    current_period_end: str
