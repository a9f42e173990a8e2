"""Persistence adapter for subscriptions and the payment ledger."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.models import Payment, Subscription
from app.models.subscription import PaymentStatus, SubscriptionStatus


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class SubscriptionRepository:
    """
    Narrow CRUD surface over `subscriptions` and `payments`.

    Writes commit immediately and roll back on failure, re-raising the SQLAlchemy
    error so the caller decides what the failure means.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_subscription(self, subscription_id: uuid.UUID | str) -> Optional[Subscription]:
        return self.db.get(Subscription, _as_uuid(subscription_id))

    def get_active_subscription(self, account_id: str) -> Optional[Subscription]:
        return self.db.execute(
            select(Subscription)
            .where(
                Subscription.account_id == account_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .limit(1)
        ).scalar_one_or_none()

    def get_current_subscription(self, account_id: str, now: datetime) -> Optional[Subscription]:
        """Newest subscription that still grants access: active, or cancelled inside its paid period."""
        return self.db.execute(
            select(Subscription)
            .where(
                Subscription.account_id == account_id,
                or_(
                    and_(
                        Subscription.status == SubscriptionStatus.ACTIVE.value,
                        Subscription.current_period_end >= now,
                    ),
                    and_(
                        Subscription.status == SubscriptionStatus.CANCELLED.value,
                        Subscription.current_period_end > now,
                    ),
                ),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def list_subscriptions(self, account_id: str) -> List[Subscription]:
        return list(
            self.db.execute(
                select(Subscription)
                .where(Subscription.account_id == account_id)
                .order_by(Subscription.created_at)
            ).scalars()
        )

    def create_subscription(self, **fields: Any) -> Subscription:
        subscription = Subscription(**fields)
        return self._commit(subscription)

    def update_subscription(self, subscription: Subscription) -> Subscription:
        return self._commit(subscription)

    def record_payment(self, **fields: Any) -> Payment:
        """Append a ledger row. Payments are never updated once written."""
        payment = Payment(**fields)
        return self._commit(payment)

    def get_payment(self, payment_id: uuid.UUID | str) -> Optional[Payment]:
        return self.db.get(Payment, _as_uuid(payment_id))

    def find_payment_by_order_id(self, order_id: str) -> Optional[Payment]:
        return self.db.execute(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.status == PaymentStatus.DONE.value)
            .order_by(Payment.created_at)
            .limit(1)
        ).scalar_one_or_none()

    def list_payments(self, subscription_id: uuid.UUID | str) -> List[Payment]:
        return list(
            self.db.execute(
                select(Payment)
                .where(Payment.subscription_id == _as_uuid(subscription_id))
                .order_by(Payment.created_at)
            ).scalars()
        )

    def list_payments_by_key(self, payment_key: str) -> List[Payment]:
        return list(
            self.db.execute(
                select(Payment).where(Payment.payment_key == payment_key).order_by(Payment.created_at)
            ).scalars()
        )

    def list_reconciliation_markers(self) -> List[Payment]:
        """Charges with no linked subscription that have not been refunded yet."""
        refunded = select(Payment.payment_key).where(Payment.status == PaymentStatus.CANCELLED.value)
        return list(
            self.db.execute(
                select(Payment)
                .where(
                    Payment.subscription_id.is_(None),
                    Payment.status == PaymentStatus.DONE.value,
                    Payment.payment_key.not_in(refunded),
                )
                .order_by(Payment.created_at)
            ).scalars()
        )

    def _commit(self, row):
        try:
            self.db.add(row)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(row)
        return row
