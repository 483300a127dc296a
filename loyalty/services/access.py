"""Plan-priority deal access decisions."""

from __future__ import annotations

from dataclasses import dataclass

from loyalty.db.models.core import Account, Deal
from loyalty.services.plans import PlanCatalog

DEFAULT_DEAL_PRIORITY = 1


def can_redeem(user_priority: int, deal_priority: int) -> bool:
    return user_priority >= deal_priority


def required_priority(deal: Deal, default: int = DEFAULT_DEAL_PRIORITY) -> int:
    if deal.required_plan_priority is None:
        return default
    return deal.required_plan_priority


@dataclass(slots=True)
class AccessDecision:
    allowed: bool
    user_priority: int
    required_priority: int
    plan_key: str | None


class AccessEvaluator:
    """Decides redeemability only; quota and ``max_redemptions`` checks live elsewhere."""

    def __init__(self, catalog: PlanCatalog, default_priority: int = DEFAULT_DEAL_PRIORITY) -> None:
        self.catalog = catalog
        self.default_priority = default_priority

    async def evaluate(self, account: Account, deal: Deal) -> AccessDecision:
        plan = await self.catalog.resolve_account_plan(account)
        user_priority = plan.priority if plan else 0
        needed = required_priority(deal, self.default_priority)
        return AccessDecision(
            allowed=can_redeem(user_priority, needed),
            user_priority=user_priority,
            required_priority=needed,
            plan_key=plan.key if plan else None,
        )

    async def can_account_redeem(self, account: Account, deal: Deal) -> bool:
        return (await self.evaluate(account, deal)).allowed


__all__ = [
    "AccessDecision",
    "AccessEvaluator",
    "DEFAULT_DEAL_PRIORITY",
    "can_redeem",
    "required_priority",
]
