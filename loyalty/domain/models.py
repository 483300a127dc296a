"""Pydantic models shared across service/application layers."""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

UNLIMITED = -1


class CounterKind(str, Enum):
    REDEMPTION = "redemption"
    DEAL_POST = "deal_post"


class PlanRecord(BaseModel):
    """Read-only view of a catalog plan."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    key: str
    name: str
    priority: int
    max_deal_redemptions: int | None = None
    max_deals_per_month: int | None = None
    type: Literal["user", "merchant"] = "user"
    billing_cycle: Literal["monthly", "yearly", "lifetime"] = "monthly"
    is_active: bool = True


class UsageSnapshot(BaseModel):
    account_id: int
    kind: CounterKind
    used: int
    limit: int
    plan_key: str | None = None

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int | None:
        if self.unlimited:
            return None
        return max(self.limit - self.used, 0)


class RenewalReport(BaseModel):
    period: date
    renewed_users: list[int] = Field(default_factory=list)
    renewed_merchants: list[int] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.renewed_users) + len(self.renewed_merchants)


class PriorityConsolidationReport(BaseModel):
    updated: int = 0
    conflicts: list[dict[str, Any]] = Field(default_factory=list)


class PlanBackfillReport(BaseModel):
    linked: int = 0
    unresolved: list[int] = Field(default_factory=list)


class UserStatistics(BaseModel):
    total_active_users: int = 0
    total_redemptions: int = 0
    avg_redemptions_per_user: float = 0.0
    users_at_limit: int = 0


class MerchantStatistics(BaseModel):
    total_active_merchants: int = 0
    total_deals_posted: int = 0
    avg_deals_per_merchant: float = 0.0
    merchants_at_limit: int = 0


class DealStatistics(BaseModel):
    approved_this_month: int = 0
    pending_approval: int = 0
    redemptions_this_month: int = 0


class MonthlyStatistics(BaseModel):
    period: date
    users: UserStatistics = Field(default_factory=UserStatistics)
    merchants: MerchantStatistics = Field(default_factory=MerchantStatistics)
    deals: DealStatistics = Field(default_factory=DealStatistics)


class NotificationEvent(BaseModel):
    event_type: str
    account_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class DeliveryReceipt(BaseModel):
    success: bool
    message_id: str | None = None


__all__ = [
    "CounterKind",
    "DealStatistics",
    "DeliveryReceipt",
    "MerchantStatistics",
    "MonthlyStatistics",
    "NotificationEvent",
    "PlanBackfillReport",
    "PlanRecord",
    "PriorityConsolidationReport",
    "RenewalReport",
    "UNLIMITED",
    "UsageSnapshot",
    "UserStatistics",
]
