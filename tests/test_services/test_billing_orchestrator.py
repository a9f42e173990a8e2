from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from app.core.exceptions import (
    ConflictError,
    GatewayError,
    PersistenceError,
    StoreUnavailableError,
    ValidationError,
)
from app.models import Payment, Subscription
from app.services.billing_orchestrator import (
    RECONCILIATION_MARKER,
    ConfirmationRequest,
    SubscriptionConfirmationOrchestrator,
    new_order_id,
)
from app.services.reconciliation import ReconciliationService
from app.services.subscription_repository import SubscriptionRepository

NOW = datetime(2024, 1, 31, 9, 0, 0)


def _request(**overrides):
    fields = {
        "auth_key": "auth_abc",
        "customer_key": "cust_1",
        "account_id": "acct_1",
        "plan_type": "premium",
    }
    fields.update(overrides)
    return ConfirmationRequest(**fields)


def _orchestrator(repository, gateway):
    return SubscriptionConfirmationOrchestrator(repository, gateway, clock=lambda: NOW)


class BrokenInsertRepository(SubscriptionRepository):
    def create_subscription(self, **fields):
        raise OperationalError("INSERT INTO subscriptions", {}, Exception("disk I/O error"))


class BrokenLedgerRepository(SubscriptionRepository):
    def record_payment(self, **fields):
        raise OperationalError("INSERT INTO payments", {}, Exception("disk I/O error"))


class BrokenLookupRepository(SubscriptionRepository):
    def get_active_subscription(self, account_id):
        raise SQLAlchemyError("connection lost")


class YieldingGateway:
    """Wraps a gateway so every call yields to the event loop before answering."""

    def __init__(self, inner):
        self.inner = inner

    async def issue_billing_key(self, *args):
        await asyncio.sleep(0)
        return await self.inner.issue_billing_key(*args)

    async def charge_billing(self, *args):
        await asyncio.sleep(0)
        return await self.inner.charge_billing(*args)


@pytest.mark.asyncio
async def test_premium_confirmation_starts_subscription(repository, gateway, db):
    result = await _orchestrator(repository, gateway).confirm(_request())

    assert result.ok
    subscription = result.subscription
    assert subscription.status == "active"
    assert subscription.plan_type == "premium"
    assert subscription.price == 5900
    assert subscription.billing_key == "bk_cust_1"
    assert subscription.current_period_start == NOW
    assert subscription.current_period_end == datetime(2024, 2, 29, 9, 0, 0)
    assert subscription.vet_consultations_remaining == 0

    assert [call[0] for call in gateway.calls] == ["issue_billing_key", "charge_billing"]
    charge = gateway.calls[1]
    assert charge[1:4] == ("bk_cust_1", "cust_1", 5900)
    assert charge[5] == "펫체키 프리미엄 구독"

    payments = repository.list_payments(subscription.id)
    assert len(payments) == 1
    assert payments[0].amount == 5900
    assert payments[0].order_id == charge[4]
    assert payments[0].status == "done"


@pytest.mark.asyncio
async def test_premium_plus_grants_vet_consultations(repository, gateway):
    result = await _orchestrator(repository, gateway).confirm(_request(plan_type="premium_plus"))

    assert result.ok
    assert result.subscription.price == 9900
    assert result.subscription.vet_consultations_remaining == 2
    assert gateway.calls[1][5] == "펫체키 프리미엄+ 구독"


@pytest.mark.asyncio
async def test_response_body_shape(repository, gateway):
    result = await _orchestrator(repository, gateway).confirm(_request())

    body = result.to_response()
    assert body["success"] is True
    assert body["message"] == "Subscription started"
    assert body["subscription"] == {
        "id": str(result.subscription.id),
        "plan_type": "premium",
        "current_period_end": "2024-02-29T09:00:00",
    }


@pytest.mark.asyncio
async def test_existing_active_subscription_is_rejected_before_gateway(repository, gateway):
    first = await _orchestrator(repository, gateway).confirm(_request())
    assert first.ok

    second_gateway = type(gateway)()
    result = await _orchestrator(repository, second_gateway).confirm(_request(plan_type="premium_plus"))

    assert isinstance(result.error, ConflictError)
    assert result.error.code == "ALREADY_SUBSCRIBED"
    assert result.error.message == "Account already has an active subscription"
    assert second_gateway.calls == []


@pytest.mark.asyncio
async def test_billing_key_failure_writes_nothing(repository, make_gateway, gateway_error, db):
    gateway = make_gateway(issue_error=gateway_error)

    result = await _orchestrator(repository, gateway).confirm(_request())

    assert result.error is gateway_error
    assert result.error.message == "카드 정보를 다시 확인해주세요."
    assert [call[0] for call in gateway.calls] == ["issue_billing_key"]
    assert db.execute(select(Subscription)).first() is None
    assert db.execute(select(Payment)).first() is None


@pytest.mark.asyncio
async def test_charge_failure_writes_nothing(repository, make_gateway, db):
    error = GatewayError("잔액이 부족합니다.", code="REJECT_CARD_PAYMENT", gateway_status=400)
    gateway = make_gateway(charge_error=error)

    result = await _orchestrator(repository, gateway).confirm(_request())

    assert result.error is error
    assert db.execute(select(Subscription)).first() is None
    assert db.execute(select(Payment)).first() is None


@pytest.mark.asyncio
async def test_insert_failure_after_charge_reports_payment_key(db, gateway, caplog):
    repository = BrokenInsertRepository(db)
    caplog.set_level(logging.ERROR)

    result = await _orchestrator(repository, gateway).confirm(_request())

    assert isinstance(result.error, PersistenceError)
    assert result.error.status_code == 500
    payment_key = result.error.payment_key
    assert payment_key.startswith("pay_1_")
    assert result.error.to_dict()["paymentKey"] == payment_key
    assert RECONCILIATION_MARKER in caplog.text
    assert payment_key in caplog.text

    markers = repository.list_reconciliation_markers()
    assert len(markers) == 1
    assert markers[0].payment_key == payment_key
    assert markers[0].subscription_id is None
    assert markers[0].amount == 5900


@pytest.mark.asyncio
async def test_ledger_failure_does_not_fail_confirmation(db, gateway, caplog):
    repository = BrokenLedgerRepository(db)
    caplog.set_level(logging.ERROR)

    result = await _orchestrator(repository, gateway).confirm(_request())

    assert result.ok
    assert result.subscription.status == "active"
    assert "Payment ledger insert failed" in caplog.text


@pytest.mark.asyncio
async def test_lookup_failure_stops_before_gateway(db, gateway):
    result = await _orchestrator(BrokenLookupRepository(db), gateway).confirm(_request())

    assert isinstance(result.error, StoreUnavailableError)
    assert not isinstance(result.error, PersistenceError)
    assert result.error.status_code == 500
    assert result.error.to_dict() == {
        "success": False,
        "error": "Could not read subscription state",
        "code": "SERVER_ERROR",
    }
    assert gateway.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, fields",
    [
        ({"auth_key": None}, ["authKey"]),
        ({"customer_key": ""}, ["customerKey"]),
        ({"account_id": "   "}, ["accountId"]),
        ({"auth_key": None, "plan_type": None}, ["authKey", "planType"]),
    ],
)
async def test_missing_fields_are_rejected(repository, gateway, overrides, fields):
    result = await _orchestrator(repository, gateway).confirm(_request(**overrides))

    assert isinstance(result.error, ValidationError)
    assert result.error.message == "Missing required parameters"
    assert result.error.details == {"fields": fields}
    assert gateway.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("plan_type", ["free", "gold", "PREMIUM"])
async def test_unknown_or_free_plan_is_rejected(repository, gateway, plan_type):
    result = await _orchestrator(repository, gateway).confirm(_request(plan_type=plan_type))

    assert isinstance(result.error, ValidationError)
    assert result.error.message == "Invalid plan type"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_idempotent_retry_replays_without_second_charge(repository, gateway):
    orchestrator = _orchestrator(repository, gateway)

    first = await orchestrator.confirm(_request(idempotency_key="req-123"))
    second = await orchestrator.confirm(_request(idempotency_key="req-123"))

    assert first.ok and second.ok
    assert second.replayed is True
    assert second.subscription.id == first.subscription.id
    assert [call[0] for call in gateway.calls] == ["issue_billing_key", "charge_billing"]


@pytest.mark.asyncio
async def test_idempotent_retry_after_lost_insert_returns_payment_key(db, gateway):
    broken = _orchestrator(BrokenInsertRepository(db), gateway)
    first = await broken.confirm(_request(idempotency_key="req-9"))

    retry = await _orchestrator(SubscriptionRepository(db), gateway).confirm(_request(idempotency_key="req-9"))

    assert isinstance(retry.error, PersistenceError)
    assert retry.error.payment_key == first.error.payment_key
    assert len([call for call in gateway.calls if call[0] == "charge_billing"]) == 1


@pytest.mark.asyncio
async def test_idempotent_retry_after_refund_reports_refund(db, gateway):
    first = await _orchestrator(BrokenInsertRepository(db), gateway).confirm(_request(idempotency_key="req-7"))
    repository = SubscriptionRepository(db)
    marker = repository.list_reconciliation_markers()[0]
    await ReconciliationService(repository, gateway).refund(marker.id)

    retry = await _orchestrator(repository, gateway).confirm(_request(idempotency_key="req-7"))

    assert first.error.payment_key == marker.payment_key
    assert isinstance(retry.error, ConflictError)
    assert retry.error.code == "PREVIOUS_ATTEMPT_REFUNDED"
    assert len([call for call in gateway.calls if call[0] == "charge_billing"]) == 1


@pytest.mark.asyncio
async def test_concurrent_confirmations_keep_one_active_subscription(repository, gateway, caplog):
    caplog.set_level(logging.ERROR)
    slow_gateway = YieldingGateway(gateway)
    orchestrator = _orchestrator(repository, slow_gateway)

    results = await asyncio.gather(
        orchestrator.confirm(_request()),
        orchestrator.confirm(_request(plan_type="premium_plus")),
    )

    succeeded = [result for result in results if result.ok]
    failed = [result for result in results if not result.ok]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert isinstance(failed[0].error, PersistenceError)
    assert failed[0].error.payment_key is not None
    assert RECONCILIATION_MARKER in caplog.text

    active = [row for row in repository.list_subscriptions("acct_1") if row.status == "active"]
    assert len(active) == 1
    assert [row.payment_key for row in repository.list_reconciliation_markers()] == [
        failed[0].error.payment_key
    ]


def test_store_rejects_second_active_row(repository):
    fields = dict(
        account_id="acct_1",
        plan_type="premium",
        price=5900,
        billing_key="bk",
        customer_key="cust",
        status="active",
        current_period_start=NOW,
        current_period_end=datetime(2024, 2, 29, 9, 0, 0),
    )
    repository.create_subscription(**fields)

    with pytest.raises(IntegrityError):
        repository.create_subscription(**fields)

    repository.create_subscription(**{**fields, "status": "cancelled"})
    assert len(repository.list_subscriptions("acct_1")) == 2


def test_order_ids():
    assert new_order_id("acct_1", "key") == new_order_id("acct_1", "key")
    assert new_order_id("acct_1", "key") != new_order_id("acct_2", "key")
    assert new_order_id("acct_1") != new_order_id("acct_1")
    assert new_order_id("acct/../1").startswith("SUB_acct1_")
    assert new_order_id("!!!", "key").startswith("SUB_anon_")
