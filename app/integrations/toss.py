from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import SecretStr

from app.config import settings
from app.core.exceptions import GatewayError
from app.core.retry import HTTPCallError, RetryExecutor, RetryOptions, RetryResult

logger = logging.getLogger(__name__)


@dataclass
class CardInfo:
    company: Optional[str] = None
    number: Optional[str] = None
    card_type: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> Optional["CardInfo"]:
        card = data.get("card") or {}
        if not card and not data.get("cardCompany"):
            return None
        return cls(
            company=card.get("company") or data.get("cardCompany") or card.get("issuerCode"),
            number=card.get("number") or data.get("cardNumber"),
            card_type=card.get("cardType"),
        )


@dataclass
class BillingAuthorization:
    billing_key: str
    customer_key: str
    card: Optional[CardInfo] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class PaymentReceipt:
    payment_key: str
    order_id: str
    amount: int
    approved_at: Optional[datetime] = None
    card: Optional[CardInfo] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class CancellationReceipt:
    payment_key: str
    status: str
    cancel_amount: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 with offset (e.g. 2024-01-01T10:00:00+09:00) to naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class BillingGatewayClient:
    """Toss Payments billing API client: billing-key issuance, recurring charge, cancellation."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        retry_options: Optional[RetryOptions] = None,
        executor: Optional[RetryExecutor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._secret_key = SecretStr(secret_key) if secret_key is not None else None
        self.base_url = (base_url or str(settings.toss_api_url)).rstrip("/")
        self.retry_options = retry_options or RetryOptions.from_settings()
        self.executor = executor or RetryExecutor(self.retry_options)
        self._transport = transport

    def _auth_header(self) -> str:
        # Built per call; never cached or logged.
        secret = self._secret_key or settings.toss_secret_key
        value = secret.get_secret_value()
        if not value:
            raise GatewayError("TOSS_SECRET_KEY is not configured", code="GATEWAY_NOT_CONFIGURED")
        token = base64.b64encode(f"{value}:".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    async def _post(self, path: str, payload: Dict[str, Any]) -> RetryResult:
        headers = {
            "Authorization": self._auth_header(),
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=self.retry_options.timeout, transport=self._transport) as client:
            return await self.executor.execute(
                lambda: client.post(url, json=payload, headers=headers),
                self.retry_options,
            )

    def _raise_for_result(self, result: RetryResult, operation: str, fallback: str) -> Dict[str, Any]:
        if result.ok:
            return result.data if isinstance(result.data, dict) else {}
        error = result.error
        if isinstance(error, HTTPCallError):
            message = error.payload.get("message") or fallback
            code = error.payload.get("code")
        else:
            message = f"{fallback} ({type(error).__name__})"
            code = "GATEWAY_UNAVAILABLE"
        logger.error(
            "Gateway %s failed: status=%s code=%s retries=%s message=%s",
            operation,
            result.status,
            code,
            result.retry_count,
            message,
        )
        raise GatewayError(
            str(message),
            code=code,
            gateway_status=result.status,
            retry_count=result.retry_count,
        )

    async def issue_billing_key(self, auth_key: str, customer_key: str) -> BillingAuthorization:
        """Exchange a short-lived authKey for a reusable billing key."""
        result = await self._post(
            "/billing/authorizations/issue",
            {"authKey": auth_key, "customerKey": customer_key},
        )
        data = self._raise_for_result(result, "billing key issue", "Billing key issuance failed")
        billing_key = data.get("billingKey")
        if not billing_key:
            raise GatewayError("Gateway response did not include a billing key", gateway_status=result.status)
        return BillingAuthorization(
            billing_key=billing_key,
            customer_key=data.get("customerKey") or customer_key,
            card=CardInfo.from_payload(data),
            raw=data,
        )

    async def charge_billing(
        self,
        billing_key: str,
        customer_key: str,
        amount: int,
        order_id: str,
        order_name: str,
    ) -> PaymentReceipt:
        """Charge a stored billing key. `order_id` is the gateway-side idempotency key."""
        result = await self._post(
            f"/billing/{billing_key}",
            {
                "customerKey": customer_key,
                "amount": amount,
                "orderId": order_id,
                "orderName": order_name,
            },
        )
        data = self._raise_for_result(result, "charge", "Payment failed")
        payment_key = data.get("paymentKey")
        if not payment_key:
            raise GatewayError("Gateway response did not include a payment key", gateway_status=result.status)
        return PaymentReceipt(
            payment_key=payment_key,
            order_id=data.get("orderId") or order_id,
            amount=int(data.get("totalAmount") or amount),
            approved_at=_parse_timestamp(data.get("approvedAt")),
            card=CardInfo.from_payload(data),
            raw=data,
        )

    async def cancel_payment(
        self,
        payment_key: str,
        reason: str,
        amount: Optional[int] = None,
    ) -> CancellationReceipt:
        """Cancel (refund) a payment, fully or partially when `amount` is given."""
        body: Dict[str, Any] = {"cancelReason": reason}
        if amount:
            body["cancelAmount"] = amount
        result = await self._post(f"/payments/{payment_key}/cancel", body)
        data = self._raise_for_result(result, "cancel", "Payment cancellation failed")
        return CancellationReceipt(
            payment_key=data.get("paymentKey") or payment_key,
            status=str(data.get("status") or "CANCELED"),
            cancel_amount=amount,
            raw=data,
        )
