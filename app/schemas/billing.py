from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ConfirmRequest(BaseModel):
    """Fields are optional here; presence and plan checks belong to the confirmation saga."""

    model_config = ConfigDict(populate_by_name=True)

    auth_key: str | None = Field(default=None, alias="authKey")
    customer_key: str | None = Field(default=None, alias="customerKey")
    account_id: str | None = Field(default=None, alias="accountId")
    plan_type: str | None = Field(default=None, alias="planType")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=128)


class ConfirmedSubscription(BaseModel):
    id: str
    plan_type: str
    current_period_end: str


class ConfirmResponse(BaseModel):
    success: bool = True
    subscription: ConfirmedSubscription
    message: str
