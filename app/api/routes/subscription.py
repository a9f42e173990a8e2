"""
Subscription API Routes
"""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import (
    get_current_user,
    get_optional_user,
    get_subscription_repository,
    rate_limited,
)
from app.config import settings
from app.core.exceptions import AuthError
from app.schemas.subscription import CancelResponse, SubscriptionStatusResponse
from app.services.subscription_repository import SubscriptionRepository
from app.services.subscription_service import cancel_subscription, get_subscription_status

router = APIRouter()

subscription_limit = rate_limited("subscription", settings.read_rate_limit_max_requests)


@router.get("", response_model=SubscriptionStatusResponse, dependencies=[Depends(subscription_limit)])
async def subscription_status(
    account_id: str | None = Query(default=None, alias="accountId"),
    user: Dict[str, Any] | None = Depends(get_optional_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> Dict[str, Any]:
    """Current entitlement for the caller, or for `accountId` when no session is present."""
    if user is not None:
        if account_id and account_id != user["id"]:
            raise AuthError("accountId does not match the authenticated account")
        account_id = user["id"]
    return get_subscription_status(repository, account_id)


@router.delete("", response_model=CancelResponse, dependencies=[Depends(subscription_limit)])
async def cancel(
    user: Dict[str, Any] = Depends(get_current_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> Dict[str, Any]:
    return cancel_subscription(repository, user["id"])
