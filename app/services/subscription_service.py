from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from app.core.exceptions import NotFoundError
from app.models import Subscription
from app.models.subscription import PlanType, utcnow
from app.services import subscription_lifecycle
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    """Public view of a subscription row. Gateway keys stay server-side."""
    return {
        "id": str(subscription.id),
        "account_id": subscription.account_id,
        "plan_type": subscription.plan_type,
        "price": subscription.price,
        "card_company": subscription.card_company,
        "card_number": subscription.card_number,
        "status": subscription.status,
        "current_period_start": subscription.current_period_start.isoformat(),
        "current_period_end": subscription.current_period_end.isoformat(),
        "vet_consultations_remaining": subscription.vet_consultations_remaining,
        "cancelled_at": subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
        "created_at": subscription.created_at.isoformat() if subscription.created_at else None,
    }


def get_subscription_status(
    repository: SubscriptionRepository,
    account_id: Optional[str],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not account_id:
        return {"subscription": None, "isPremium": False, "isPremiumPlus": False}

    subscription = repository.get_current_subscription(account_id, now or utcnow())
    return {
        "subscription": serialize_subscription(subscription) if subscription else None,
        "isPremium": subscription is not None,
        "isPremiumPlus": bool(subscription and subscription.plan_type == PlanType.PREMIUM_PLUS.value),
    }


def cancel_subscription(
    repository: SubscriptionRepository,
    account_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    subscription = repository.get_active_subscription(account_id)
    if subscription is None:
        raise NotFoundError("Active subscription not found")

    subscription_lifecycle.cancel(subscription, now or utcnow())
    repository.update_subscription(subscription)
    logger.info("Subscription %s cancelled for account %s", subscription.id, account_id)
    return {
        "success": True,
        "message": "Subscription cancelled. Access continues until the end of the current billing period.",
        "current_period_end": subscription.current_period_end.isoformat(),
    }
