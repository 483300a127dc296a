"""Default plan seeding."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from loyalty.db.models.core import Plan
from loyalty.services.seeds import DEFAULT_PLANS, ensure_default_plans


@pytest.mark.asyncio
async def test_ensure_default_plans_is_idempotent(session):
    created = await ensure_default_plans(session)
    again = await ensure_default_plans(session)

    rows = (await session.execute(select(Plan))).scalars().all()
    assert created == len(DEFAULT_PLANS)
    assert again == 0
    assert len(rows) == len(DEFAULT_PLANS)
    assert {plan.currency for plan in rows} == {"GHS"}


@pytest.mark.asyncio
async def test_ensure_default_plans_resyncs_drifted_rows(session):
    session.add(Plan(key="gold", name="Gold (old)", type="user", priority=9, max_deal_redemptions=1, is_active=False))
    await session.flush()

    created = await ensure_default_plans(session, currency="USD")

    gold = (await session.execute(select(Plan).where(Plan.key == "gold"))).scalar_one()
    assert created == len(DEFAULT_PLANS) - 1
    assert gold.name == "Gold"
    assert gold.priority == 2
    assert gold.max_deal_redemptions == 25
    assert gold.is_active is True
    platinum = (await session.execute(select(Plan).where(Plan.key == "platinum"))).scalar_one()
    assert platinum.max_deal_redemptions == -1
    assert platinum.currency == "USD"
