"""Shared API dependencies: identity, rate limiting, billing collaborators."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from app.core import rate_limit
from app.core.exceptions import RateLimitError
from app.core.rate_limit import RateLimiter, get_client_identifier
from app.core.security import get_current_user, get_optional_user
from app.database import get_db
from app.integrations.toss import BillingGatewayClient
from app.services.subscription_repository import SubscriptionRepository

__all__ = [
    "get_current_user",
    "get_optional_user",
    "get_rate_limiter",
    "get_billing_gateway",
    "get_subscription_repository",
    "rate_limited",
]

logger = logging.getLogger(__name__)


def get_rate_limiter() -> RateLimiter:
    return rate_limit.rate_limiter


def get_billing_gateway() -> BillingGatewayClient:
    return BillingGatewayClient()


def get_subscription_repository(db: Session = Depends(get_db)) -> SubscriptionRepository:
    return SubscriptionRepository(db)


def rate_limited(
    scope: str,
    max_requests: int | None = None,
    window_ms: int | None = None,
) -> Callable[..., None]:
    """Route dependency enforcing a per-caller window; counters are kept per scope."""

    def dependency(
        request: Request,
        response: Response,
        user: Dict[str, Any] | None = Depends(get_optional_user),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        identifier = get_client_identifier(request.headers, user["id"] if user else None)
        limit = limiter.default_max_requests if max_requests is None else max_requests
        result = limiter.check(f"{scope}:{identifier}", limit, window_ms)
        if not result.allowed:
            logger.info("Rate limit exceeded for %s on %s", identifier, scope)
            raise RateLimitError(
                "Too many requests. Please try again later.",
                limit=limit,
                remaining=result.remaining,
                reset_in_ms=result.reset_in_ms,
            )
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_in_ms)

    return dependency
