"""
Billing API Routes
"""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.api.dependencies import (
    get_billing_gateway,
    get_optional_user,
    get_subscription_repository,
    rate_limited,
)
from app.config import settings
from app.core.exceptions import AuthError
from app.integrations.toss import BillingGatewayClient
from app.schemas.billing import ConfirmRequest, ConfirmResponse
from app.services.billing_orchestrator import ConfirmationRequest, SubscriptionConfirmationOrchestrator
from app.services.subscription_repository import SubscriptionRepository

router = APIRouter()


@router.post(
    "/confirm",
    response_model=ConfirmResponse,
    dependencies=[Depends(rate_limited("billing", settings.billing_rate_limit_max_requests))],
)
async def confirm_billing(
    payload: ConfirmRequest,
    user: Dict[str, Any] | None = Depends(get_optional_user),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
    gateway: BillingGatewayClient = Depends(get_billing_gateway),
) -> Dict[str, Any]:
    """Issue a billing key, take the first charge and start the subscription."""
    account_id = payload.account_id
    if user is not None:
        if account_id and account_id != user["id"]:
            raise AuthError("accountId does not match the authenticated account")
        account_id = user["id"]

    orchestrator = SubscriptionConfirmationOrchestrator(repository, gateway)
    result = await orchestrator.confirm(
        ConfirmationRequest(
            auth_key=payload.auth_key,
            customer_key=payload.customer_key,
            account_id=account_id,
            plan_type=payload.plan_type,
            idempotency_key=payload.idempotency_key,
        )
    )
    if result.error is not None:
        raise result.error
    return result.to_response()
