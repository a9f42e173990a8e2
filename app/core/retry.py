"""Timeout, retry classification and exponential backoff for outbound HTTP calls."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

MAX_JITTER = 0.3


@dataclass
class RetryOptions:
    """Retry policy. Delays and timeout are in seconds; timeout applies per attempt."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryOptions":
        return cls(
            max_retries=settings.gateway_max_retries,
            initial_delay=settings.gateway_initial_delay,
            backoff_multiplier=settings.gateway_backoff_multiplier,
            max_delay=settings.gateway_max_delay,
            timeout=settings.gateway_timeout,
        )


class HTTPCallError(Exception):
    """Non-2xx response. `payload` is the parsed error body (dict when JSON, else {})."""

    def __init__(self, message: str, status: int, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload or {}


@dataclass
class RetryResult:
    data: Any = None
    error: Exception | None = None
    status: int = 0
    retry_count: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS_CODES


def is_retryable_exception(exc: BaseException) -> bool:
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


def compute_delay(attempt: int, options: RetryOptions, jitter: float) -> float:
    """Backoff before retrying after failed attempt `attempt` (0-indexed)."""
    delay = options.initial_delay * (options.backoff_multiplier ** attempt) * (1 + jitter)
    return min(delay, options.max_delay)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def parse_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_message(payload: dict[str, Any], status: int) -> str:
    return str(payload.get("message") or payload.get("error") or f"HTTP {status}")


class RetryExecutor:
    """Runs an HTTP call under a per-attempt timeout, retrying transient failures."""

    def __init__(
        self,
        options: RetryOptions | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] | None = None,
    ):
        self.options = options or RetryOptions()
        self._sleep = sleep
        self._jitter = jitter or (lambda: random.uniform(0, MAX_JITTER))

    async def execute(
        self,
        call: Callable[[], Awaitable[httpx.Response]],
        options: RetryOptions | None = None,
    ) -> RetryResult:
        opts = options or self.options
        retry_count = 0
        last_status = 0
        last_error: Exception | None = None

        for attempt in range(opts.max_retries + 1):
            try:
                response = await asyncio.wait_for(call(), timeout=opts.timeout)
            except Exception as exc:
                last_error = exc
                if is_retryable_exception(exc) and attempt < opts.max_retries:
                    retry_count += 1
                    wait = compute_delay(attempt, opts, self._jitter())
                    logger.warning(
                        "Attempt %s failed with %s; retrying in %.2fs",
                        attempt + 1,
                        type(exc).__name__,
                        wait,
                    )
                    await self._sleep(wait)
                    continue
                return RetryResult(error=exc, status=last_status, retry_count=retry_count)

            last_status = response.status_code
            if response.is_success:
                return RetryResult(data=parse_body(response), status=last_status, retry_count=retry_count)

            payload = _error_payload(response)
            if not is_retryable_status(last_status):
                return RetryResult(
                    error=HTTPCallError(_error_message(payload, last_status), last_status, payload),
                    status=last_status,
                    retry_count=retry_count,
                )

            if attempt < opts.max_retries:
                retry_count += 1
                wait = compute_delay(attempt, opts, self._jitter())
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    wait = min(retry_after, opts.max_delay)
                logger.warning(
                    "Attempt %s returned HTTP %s; retrying in %.2fs",
                    attempt + 1,
                    last_status,
                    wait,
                )
                await self._sleep(wait)
                continue

            message = payload.get("message") or f"HTTP {last_status} after {retry_count} retries"
            return RetryResult(
                error=HTTPCallError(str(message), last_status, payload),
                status=last_status,
                retry_count=retry_count,
            )

        return RetryResult(
            error=last_error or RuntimeError("Max retries exceeded"),
            status=last_status,
            retry_count=retry_count,
        )
