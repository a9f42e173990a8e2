"""
Subscription status state machine.

    active ──cancel──────────▶ cancelled       (terminal)
    active ──renewal failed──▶ payment_failed ──renewed──▶ active
    payment_failed ──retry failed again──▶ payment_failed
    active ──period ended────▶ expired         (terminal)
    payment_failed ──────────▶ expired
    active ◀──────pause/resume──────▶ paused

Cancelled and expired rows are never reactivated; a new subscription gets a new row.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from app.core.exceptions import ConflictError
from app.models import Subscription
from app.models.subscription import SubscriptionStatus, add_months, get_plan, utcnow

ACTIVE = SubscriptionStatus.ACTIVE
CANCELLED = SubscriptionStatus.CANCELLED
PAYMENT_FAILED = SubscriptionStatus.PAYMENT_FAILED
EXPIRED = SubscriptionStatus.EXPIRED
PAUSED = SubscriptionStatus.PAUSED

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    ACTIVE: frozenset({ACTIVE, CANCELLED, PAYMENT_FAILED, EXPIRED, PAUSED}),
    PAYMENT_FAILED: frozenset({ACTIVE, PAYMENT_FAILED, EXPIRED}),
    PAUSED: frozenset({ACTIVE, CANCELLED, EXPIRED}),
    CANCELLED: frozenset(),
    EXPIRED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
    return SubscriptionStatus(target) in ALLOWED_TRANSITIONS[SubscriptionStatus(current)]


def transition(
    subscription: Subscription,
    target: SubscriptionStatus,
    now: Optional[datetime] = None,
) -> Subscription:
    current = SubscriptionStatus(subscription.status)
    if not can_transition(current, target):
        raise ConflictError(
            f"Cannot move subscription from {current.value} to {target.value}",
            code="INVALID_TRANSITION",
        )
    subscription.status = target.value
    subscription.updated_at = now or utcnow()
    return subscription


def cancel(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    """Stop renewal. The period end is left unchanged so access runs until it."""
    now = now or utcnow()
    transition(subscription, CANCELLED, now)
    subscription.cancelled_at = now
    return subscription


def mark_payment_failed(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    return transition(subscription, PAYMENT_FAILED, now)


def expire(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    return transition(subscription, EXPIRED, now)


def pause(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    return transition(subscription, PAUSED, now)


def renew(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    """Successful renewal charge: advance one period and restore plan credits."""
    current = SubscriptionStatus(subscription.status)
    if current not in (ACTIVE, PAYMENT_FAILED):
        raise ConflictError(
            f"Cannot renew a {current.value} subscription",
            code="INVALID_TRANSITION",
        )
    transition(subscription, ACTIVE, now)
    start = subscription.current_period_end
    subscription.current_period_start = start
    subscription.current_period_end = add_months(start, 1)
    subscription.vet_consultations_remaining = get_plan(subscription.plan_type).vet_consultations
    return subscription


def has_access(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """Entitlement check: active, or cancelled but still inside the paid period."""
    if subscription is None:
        return False
    now = now or utcnow()
    status = SubscriptionStatus(subscription.status)
    if status is ACTIVE:
        return True
    return status is CANCELLED and now < subscription.current_period_end
