"""Operator tooling for charges that never became a subscription."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from app.core.exceptions import ConflictError, NotFoundError, PersistenceError
from app.integrations.toss import BillingGatewayClient
from app.models import Payment
from app.models.subscription import PaymentStatus
from app.services.billing_orchestrator import RECONCILIATION_MARKER
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "Subscription could not be activated"


class ReconciliationService:
    def __init__(self, repository: SubscriptionRepository, gateway: BillingGatewayClient):
        self.repository = repository
        self.gateway = gateway

    def list_markers(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": str(payment.id),
                "account_id": payment.account_id,
                "payment_key": payment.payment_key,
                "order_id": payment.order_id,
                "amount": payment.amount,
                "plan_type": payment.plan_type,
                "approved_at": payment.approved_at.isoformat() if payment.approved_at else None,
            }
            for payment in self.repository.list_reconciliation_markers()
        ]

    async def refund(self, payment_id: str, reason: str = DEFAULT_REFUND_REASON) -> Payment:
        """Cancel an orphaned charge at the gateway and append a `cancelled` ledger row."""
        payment = self.repository.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.subscription_id is not None:
            raise ConflictError("Payment is linked to a subscription", code="NOT_A_RECONCILIATION_MARKER")
        history = self.repository.list_payments_by_key(payment.payment_key)
        if any(row.status == PaymentStatus.CANCELLED.value for row in history):
            raise ConflictError("Payment already refunded", code="ALREADY_REFUNDED")

        receipt = await self.gateway.cancel_payment(payment.payment_key, reason, payment.amount)
        try:
            refund_row = self.repository.record_payment(
                subscription_id=None,
                account_id=payment.account_id,
                payment_key=payment.payment_key,
                order_id=payment.order_id,
                amount=payment.amount,
                plan_type=payment.plan_type,
                status=PaymentStatus.CANCELLED.value,
                card_company=payment.card_company,
                card_number=payment.card_number,
            )
        except Exception as exc:
            logger.error(
                "%s refund ledger insert failed after gateway cancel: payment_key=%s order_id=%s amount=%s error=%s",
                RECONCILIATION_MARKER,
                payment.payment_key,
                payment.order_id,
                payment.amount,
                exc,
            )
            raise PersistenceError(
                "Refund succeeded at the gateway but could not be recorded",
                payment_key=payment.payment_key,
            ) from exc
        logger.info(
            "Refunded orphaned payment %s (order %s, amount %s, gateway status %s)",
            payment.payment_key,
            payment.order_id,
            payment.amount,
            receipt.status,
        )
        return refund_row
