"""
SQLAlchemy models for Petchecky billing.
"""
from __future__ import annotations

import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import declarative_base

from app.models.subscription import PaymentStatus, SubscriptionStatus, utcnow

Base = declarative_base()


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one active subscription per account, enforced by the store.
        Index(
            "uq_subscriptions_account_active",
            "account_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Text, nullable=False, index=True)
    plan_type = Column(Text, nullable=False)
    price = Column(Integer, nullable=False)
    billing_key = Column(Text, nullable=False)
    customer_key = Column(Text, nullable=False)
    card_company = Column(Text)
    card_number = Column(Text)
    status = Column(Text, nullable=False, default=SubscriptionStatus.ACTIVE.value)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    vet_consultations_remaining = Column(Integer, nullable=False, default=0)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Payment(Base):
    """Append-only payment ledger. A row without subscription_id is a reconciliation marker."""

    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)
    account_id = Column(Text, nullable=False, index=True)
    payment_key = Column(Text, nullable=False, index=True)
    order_id = Column(Text, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    plan_type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default=PaymentStatus.DONE.value)
    card_company = Column(Text)
    card_number = Column(Text)
    approved_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RateLimitWindow(Base):
    """Shared fixed-window counter used by the database rate-limit store."""

    __tablename__ = "rate_limit_windows"

    identifier = Column(Text, primary_key=True)
    count = Column(Integer, nullable=False, default=1)
    reset_at_ms = Column(BigInteger, nullable=False, index=True)
