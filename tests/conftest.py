import os
import sys
from datetime import datetime
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['RATE_LIMIT_BACKEND'] = 'memory'
os.environ.setdefault('APP_ENV', 'test')
os.environ.setdefault('SECRET_KEY', 'test-secret-key')
os.environ.setdefault('TOSS_SECRET_KEY', 'test_sk_1234')

from app.core.exceptions import GatewayError  # noqa: E402
from app.database import SessionLocal, engine  # noqa: E402
from app.integrations.toss import BillingAuthorization, CancellationReceipt, CardInfo, PaymentReceipt  # noqa: E402
from app.models import Base  # noqa: E402
from app.services.subscription_repository import SubscriptionRepository  # noqa: E402


class FakeGateway:
    """In-process stand-in for BillingGatewayClient that records every call."""

    def __init__(self, issue_error=None, charge_error=None):
        self.issue_error = issue_error
        self.charge_error = charge_error
        self.calls = []
        self._payments = 0

    async def issue_billing_key(self, auth_key, customer_key):
        self.calls.append(("issue_billing_key", auth_key, customer_key))
        if self.issue_error:
            raise self.issue_error
        return BillingAuthorization(
            billing_key=f"bk_{customer_key}",
            customer_key=customer_key,
            card=CardInfo(company="Shinhan", number="4330****1234"),
        )

    async def charge_billing(self, billing_key, customer_key, amount, order_id, order_name):
        self.calls.append(("charge_billing", billing_key, customer_key, amount, order_id, order_name))
        if self.charge_error:
            raise self.charge_error
        self._payments += 1
        return PaymentReceipt(
            payment_key=f"pay_{self._payments}_{order_id}",
            order_id=order_id,
            amount=amount,
            approved_at=datetime(2024, 3, 15, 1, 0, 0),
            card=CardInfo(company="Shinhan", number="4330****1234"),
        )

    async def cancel_payment(self, payment_key, reason, amount=None):
        self.calls.append(("cancel_payment", payment_key, reason, amount))
        return CancellationReceipt(payment_key=payment_key, status="CANCELED", cancel_amount=amount)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def repository(db):
    return SubscriptionRepository(db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def gateway_error():
    return GatewayError("카드 정보를 다시 확인해주세요.", code="INVALID_CARD", gateway_status=400)


@pytest.fixture
def make_gateway():
    return FakeGateway
