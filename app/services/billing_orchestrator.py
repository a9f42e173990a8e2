"""
Subscription confirmation saga.

validate -> uniqueness check -> issue billing key -> charge -> persist subscription
-> append payment ledger row -> respond.

Nothing is written locally until the charge succeeds. After the charge, a failed
subscription insert is reported as PersistenceError carrying the payment key and is
never retried here; a failed ledger insert is logged and does not change the outcome.
"""
from __future__ import annotations

import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import (
    AppError,
    ConflictError,
    GatewayError,
    PersistenceError,
    StoreUnavailableError,
    ValidationError,
)
from app.integrations.toss import BillingAuthorization, BillingGatewayClient, PaymentReceipt
from app.models import Subscription
from app.models.subscription import Plan, PaymentStatus, PlanType, SubscriptionStatus, add_months, get_plan, utcnow
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

RECONCILIATION_MARKER = "RECONCILIATION_REQUIRED"
_ORDER_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class ConfirmationRequest:
    auth_key: Optional[str]
    customer_key: Optional[str]
    account_id: Optional[str]
    plan_type: Optional[str]
    idempotency_key: Optional[str] = None


@dataclass
class ConfirmationResult:
    subscription: Optional[Subscription] = None
    error: Optional[AppError] = None
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.subscription is not None

    def to_response(self) -> Dict[str, Any]:
        if self.error is not None:
            return self.error.to_dict()
        return {
            "success": True,
            "subscription": {
                "id": str(self.subscription.id),
                "plan_type": self.subscription.plan_type,
                "current_period_end": self.subscription.current_period_end.isoformat(),
            },
            "message": "Subscription started",
        }


def new_order_id(account_id: str, idempotency_key: Optional[str] = None) -> str:
    """
    Gateway order id. Deterministic for (account, idempotency key) so a replayed
    request maps to the same charge; otherwise unique per saga attempt.
    """
    prefix = _ORDER_ID_UNSAFE.sub("", account_id)[:8] or "anon"
    if idempotency_key:
        digest = hashlib.sha256(f"{account_id}:{idempotency_key}".encode("utf-8")).hexdigest()
        return f"SUB_{prefix}_{digest[:24]}"
    return f"SUB_{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class SubscriptionConfirmationOrchestrator:
    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: BillingGatewayClient,
        *,
        clock: Callable[[], datetime] = utcnow,
        order_id_factory: Callable[[str, Optional[str]], str] = new_order_id,
    ):
        self.repository = repository
        self.gateway = gateway
        self._clock = clock
        self._order_id_factory = order_id_factory

    async def confirm(self, request: ConfirmationRequest) -> ConfirmationResult:
        try:
            plan = self._validate(request)
        except ValidationError as exc:
            return ConfirmationResult(error=exc)

        account_id = request.account_id
        order_id = self._order_id_factory(account_id, request.idempotency_key)

        try:
            if request.idempotency_key:
                replay = self._replay(order_id)
                if replay is not None:
                    return replay
            existing = self.repository.get_active_subscription(account_id)
        except SQLAlchemyError as exc:
            logger.error("Subscription lookup failed for account %s: %s", account_id, exc)
            return ConfirmationResult(error=StoreUnavailableError("Could not read subscription state"))

        if existing is not None:
            return ConfirmationResult(error=ConflictError("Account already has an active subscription"))

        try:
            authorization = await self.gateway.issue_billing_key(request.auth_key, request.customer_key)
        except GatewayError as exc:
            logger.error("Billing key issue failed for account %s: %s", account_id, exc.message)
            return ConfirmationResult(error=exc)

        try:
            receipt = await self.gateway.charge_billing(
                authorization.billing_key,
                request.customer_key,
                plan.price,
                order_id,
                plan.order_name,
            )
        except GatewayError as exc:
            logger.error(
                "Charge failed for account %s order %s: %s",
                account_id,
                order_id,
                exc.message,
            )
            return ConfirmationResult(error=exc)

        try:
            subscription = self._persist_subscription(account_id, plan, request.customer_key, authorization)
        except Exception as exc:
            logger.error(
                "%s subscription insert failed after charge: account=%s order_id=%s payment_key=%s amount=%s error=%s",
                RECONCILIATION_MARKER,
                account_id,
                order_id,
                receipt.payment_key,
                receipt.amount,
                exc,
            )
            self._record_payment(account_id, None, plan, order_id, receipt)
            return ConfirmationResult(
                error=PersistenceError(
                    "Payment succeeded but the subscription could not be saved",
                    payment_key=receipt.payment_key,
                )
            )

        self._record_payment(account_id, subscription.id, plan, order_id, receipt)
        logger.info(
            "Subscription %s started for account %s (%s, order %s)",
            subscription.id,
            account_id,
            plan.plan_type.value,
            order_id,
        )
        return ConfirmationResult(subscription=subscription)

    def _validate(self, request: ConfirmationRequest) -> Plan:
        missing = [
            name
            for name, value in (
                ("authKey", request.auth_key),
                ("customerKey", request.customer_key),
                ("accountId", request.account_id),
                ("planType", request.plan_type),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError(
                "Missing required parameters",
                details={"fields": missing},
            )
        try:
            return get_plan(PlanType(request.plan_type))
        except ValueError:
            raise ValidationError("Invalid plan type", details={"fields": ["planType"]}) from None

    def _replay(self, order_id: str) -> Optional[ConfirmationResult]:
        payment = self.repository.find_payment_by_order_id(order_id)
        if payment is None:
            return None
        if payment.subscription_id is None:
            history = self.repository.list_payments_by_key(payment.payment_key)
            if any(row.status == PaymentStatus.CANCELLED.value for row in history):
                return ConfirmationResult(
                    error=ConflictError(
                        "A previous attempt with this idempotency key was refunded; retry with a new key",
                        code="PREVIOUS_ATTEMPT_REFUNDED",
                    )
                )
            return ConfirmationResult(
                error=PersistenceError(
                    "A previous attempt was charged but not saved",
                    payment_key=payment.payment_key,
                )
            )
        subscription = self.repository.get_subscription(payment.subscription_id)
        if subscription is None:
            return None
        logger.info("Replayed confirmation for order %s", order_id)
        return ConfirmationResult(subscription=subscription, replayed=True)

    def _persist_subscription(
        self,
        account_id: str,
        plan: Plan,
        customer_key: str,
        authorization: BillingAuthorization,
    ) -> Subscription:
        now = self._clock()
        card = authorization.card
        return self.repository.create_subscription(
            account_id=account_id,
            plan_type=plan.plan_type.value,
            price=plan.price,
            billing_key=authorization.billing_key,
            customer_key=customer_key,
            card_company=card.company if card else None,
            card_number=card.number if card else None,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=now,
            current_period_end=add_months(now, 1),
            vet_consultations_remaining=plan.vet_consultations,
        )

    def _record_payment(
        self,
        account_id: str,
        subscription_id,
        plan: Plan,
        order_id: str,
        receipt: PaymentReceipt,
    ) -> None:
        """Best-effort ledger append; a row without subscription_id is a reconciliation marker."""
        card = receipt.card
        try:
            self.repository.record_payment(
                subscription_id=subscription_id,
                account_id=account_id,
                payment_key=receipt.payment_key,
                order_id=order_id,
                amount=receipt.amount,
                plan_type=plan.plan_type.value,
                status=PaymentStatus.DONE.value,
                card_company=card.company if card else None,
                card_number=card.number if card else None,
                approved_at=receipt.approved_at,
            )
        except Exception as exc:
            logger.error(
                "Payment ledger insert failed: account=%s subscription=%s order_id=%s payment_key=%s error=%s",
                account_id,
                subscription_id,
                order_id,
                receipt.payment_key,
                exc,
            )
