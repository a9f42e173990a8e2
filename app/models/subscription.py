"""Plan catalog and subscription status values."""
from __future__ import annotations

import calendar
import enum
from dataclasses import dataclass
from datetime import datetime, timezone

from app.config import settings


class PlanType(str, enum.Enum):
    PREMIUM = "premium"
    PREMIUM_PLUS = "premium_plus"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"
    PAUSED = "paused"


class PaymentStatus(str, enum.Enum):
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Plan:
    plan_type: PlanType
    display_name: str
    price: int
    vet_consultations: int

    @property
    def order_name(self) -> str:
        return f"펫체키 {self.display_name} 구독"


def get_plan(plan_type: PlanType | str) -> Plan:
    """Resolve a paid plan. Raises ValueError for anything that is not a paid plan."""
    plan_type = PlanType(plan_type)
    if plan_type is PlanType.PREMIUM:
        return Plan(plan_type, "프리미엄", settings.premium_price, 0)
    return Plan(
        plan_type,
        "프리미엄+",
        settings.premium_plus_price,
        settings.premium_plus_vet_consultations,
    )


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Calendar month arithmetic; the day is clamped to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
