"""Default plan catalog seeding."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.db.models.core import Plan
from loyalty.logging import logger
from loyalty.utils.datetime import utc_now

DEFAULT_PLANS: tuple[dict, ...] = (
    {
        "key": "basic",
        "name": "Basic",
        "description": "Free forever business listing",
        "price": 0.0,
        "type": "merchant",
        "priority": 1,
        "max_deals_per_month": 0,
        "sort_order": 1,
    },
    {
        "key": "silver_business",
        "name": "Silver Business",
        "description": "Standard business package",
        "price": 300.0,
        "type": "merchant",
        "priority": 2,
        "max_deals_per_month": 1,
        "sort_order": 2,
    },
    {
        "key": "gold_business",
        "name": "Gold Business",
        "description": "Featured business package",
        "price": 500.0,
        "type": "merchant",
        "priority": 3,
        "max_deals_per_month": 2,
        "sort_order": 3,
    },
    {
        "key": "platinum_business",
        "name": "Platinum Business",
        "description": "Premium business package",
        "price": 800.0,
        "type": "merchant",
        "priority": 4,
        "max_deals_per_month": 3,
        "sort_order": 4,
    },
    {
        "key": "platinum_plus_business",
        "name": "Platinum Plus Business",
        "description": "Premium plus business package",
        "price": 1000.0,
        "type": "merchant",
        "priority": 5,
        "max_deals_per_month": 4,
        "sort_order": 5,
    },
    {
        "key": "silver",
        "name": "Silver",
        "description": "Entry-level premium access for users",
        "price": 50.0,
        "type": "user",
        "priority": 1,
        "max_deal_redemptions": 10,
        "sort_order": 1,
    },
    {
        "key": "gold",
        "name": "Gold",
        "description": "Enhanced experience for regular users",
        "price": 100.0,
        "type": "user",
        "priority": 2,
        "max_deal_redemptions": 25,
        "sort_order": 2,
    },
    {
        "key": "platinum",
        "name": "Platinum",
        "description": "Premium experience for power users",
        "price": 150.0,
        "type": "user",
        "priority": 3,
        "max_deal_redemptions": -1,
        "sort_order": 3,
    },
)

SEEDED_FIELDS = (
    "name",
    "description",
    "price",
    "type",
    "priority",
    "max_deal_redemptions",
    "max_deals_per_month",
    "sort_order",
)


async def ensure_default_plans(session: AsyncSession, currency: str = "GHS") -> int:
    """Insert missing default plans and re-sync existing ones. Returns the number created."""

    created = 0
    for payload in DEFAULT_PLANS:
        stmt = select(Plan).where(Plan.key == payload["key"])
        plan = (await session.execute(stmt)).scalar_one_or_none()
        now = utc_now()
        values = {field: payload.get(field) for field in SEEDED_FIELDS}
        if plan:
            for field, value in values.items():
                setattr(plan, field, value)
            plan.is_active = True
            plan.updated_at = now
        else:
            session.add(
                Plan(
                    key=payload["key"],
                    currency=currency,
                    billing_cycle="yearly",
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                    **values,
                )
            )
            created += 1

    await session.flush()
    logger.info("default_plans_ensured", created=created, total=len(DEFAULT_PLANS))
    return created


__all__ = ["DEFAULT_PLANS", "ensure_default_plans"]
