"""Monthly quota enforcement, renewal and recomputation."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from loyalty.db.models.core import Deal, DealRedemption, Plan
from loyalty.domain.models import CounterKind
from loyalty.services.counters import MonthlyCounterService, is_within_limit
from loyalty.services.exceptions import LimitExceeded
from loyalty.services.notifications import (
    DEAL_LIMIT_RENEWED,
    REDEMPTION_LIMIT_REACHED,
    REDEMPTION_LIMIT_RENEWED,
)


def _at(day: int, month: int = 6) -> datetime:
    return datetime(2024, month, day, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("used", "limit", "expected"),
    [(0, 0, False), (4, 5, True), (5, 5, False), (10_000, -1, True)],
)
def test_is_within_limit(used, limit, expected):
    assert is_within_limit(used, limit) is expected


@pytest.mark.asyncio
async def test_custom_limit_overrides_plan(session, plans, make_account):
    account = await make_account(
        membership_type="silver", custom_redemption_limit=5, monthly_redemption_count=5
    )
    counters = MonthlyCounterService(session)

    assert await counters.effective_limit(account, CounterKind.REDEMPTION) == 5
    with pytest.raises(LimitExceeded) as excinfo:
        await counters.check_limit(account, CounterKind.REDEMPTION)
    assert excinfo.value.used == 5
    assert excinfo.value.limit == 5
    assert str(excinfo.value) == "Monthly limit reached: 5/5."


@pytest.mark.asyncio
async def test_limit_falls_back_to_plan_then_zero(session, plans, make_account):
    session.add(Plan(key="starter", name="Starter", type="user", priority=1, max_deal_redemptions=None))
    await session.flush()
    on_plan = await make_account(membership_type="gold")
    unconfigured = await make_account(membership_type="starter")
    no_plan = await make_account(membership_type="diamond")
    counters = MonthlyCounterService(session)

    assert await counters.effective_limit(on_plan, CounterKind.REDEMPTION) == 25
    assert await counters.effective_limit(unconfigured, CounterKind.REDEMPTION) == 0
    assert await counters.effective_limit(no_plan, CounterKind.REDEMPTION) == 0
    with pytest.raises(LimitExceeded):
        await counters.check_limit(no_plan, CounterKind.REDEMPTION)


@pytest.mark.asyncio
async def test_unlimited_plan_never_blocks(session, plans, make_account):
    account = await make_account(membership_type="platinum", monthly_redemption_count=10_000)
    counters = MonthlyCounterService(session)

    snapshot = await counters.check_limit(account, CounterKind.REDEMPTION)
    assert snapshot.unlimited
    assert snapshot.remaining is None

    reserved = await counters.reserve(account, CounterKind.REDEMPTION)
    assert reserved.used == 10_001


@pytest.mark.asyncio
async def test_record_usage_increments_by_one(session, plans, make_account):
    account = await make_account(membership_type="silver")
    counters = MonthlyCounterService(session)

    for _ in range(3):
        await counters.record_usage(account, CounterKind.REDEMPTION)

    assert account.monthly_redemption_count == 3
    usage = await counters.usage(account, CounterKind.REDEMPTION)
    assert usage.remaining == 7
    assert usage.plan_key == "silver"


@pytest.mark.asyncio
async def test_reserve_stops_at_limit_and_notifies(session, plans, make_account, notifier):
    account = await make_account(membership_type="silver", custom_redemption_limit=2)
    counters = MonthlyCounterService(session, notifier=notifier)

    await counters.reserve(account, CounterKind.REDEMPTION)
    await counters.reserve(account, CounterKind.REDEMPTION)
    with pytest.raises(LimitExceeded):
        await counters.reserve(account, CounterKind.REDEMPTION)

    assert account.monthly_redemption_count == 2
    [event] = notifier.of_type(REDEMPTION_LIMIT_REACHED)
    assert event[1] == account.id
    assert event[2]["currentLimit"] == 2


@pytest.mark.asyncio
async def test_release_never_goes_negative(session, plans, make_account):
    account = await make_account(membership_type="silver", monthly_redemption_count=1)
    counters = MonthlyCounterService(session)

    assert await counters.release(account, CounterKind.REDEMPTION) == 0
    assert await counters.release(account, CounterKind.REDEMPTION) == 0


@pytest.mark.asyncio
async def test_renew_all_resets_counters_and_advances_date(session, plans, make_account, notifier):
    user = await make_account(
        membership_type="silver", monthly_redemption_count=7, last_renewal_date=date(2024, 5, 1)
    )
    merchant = await make_account(
        user_type="merchant", membership_type="gold_business", monthly_deal_count=2
    )
    pending = await make_account(status="pending", monthly_redemption_count=4)
    counters = MonthlyCounterService(session, notifier=notifier)

    report = await counters.renew_all(date(2024, 6, 15))

    assert report.period == date(2024, 6, 1)
    assert report.renewed_users == [user.id]
    assert report.renewed_merchants == [merchant.id]
    assert report.total == 2
    assert user.monthly_redemption_count == 0
    assert user.last_renewal_date == date(2024, 6, 1)
    assert user.last_renewed_at is not None
    assert user.last_renewed_at == merchant.last_renewed_at
    assert merchant.monthly_deal_count == 0
    assert pending.monthly_redemption_count == 4

    [renewed] = notifier.of_type(REDEMPTION_LIMIT_RENEWED)
    assert renewed[2] == {"name": "Ama", "newLimit": 10, "planName": "Silver", "currentMonth": "June 2024"}
    assert notifier.of_type(DEAL_LIMIT_RENEWED)[0][2]["newLimit"] == 2


@pytest.mark.asyncio
async def test_renew_all_is_idempotent_within_a_month(session, plans, make_account, notifier):
    user = await make_account(membership_type="silver", monthly_redemption_count=7)
    counters = MonthlyCounterService(session, notifier=notifier)

    await counters.renew_all(date(2024, 6, 1))
    user.monthly_redemption_count = 3
    await session.flush()
    second = await counters.renew_all(date(2024, 6, 20))

    assert second.total == 0
    assert user.monthly_redemption_count == 3
    assert len(notifier.of_type(REDEMPTION_LIMIT_RENEWED)) == 1

    following = await counters.renew_all(date(2024, 7, 1))
    assert following.renewed_users == [user.id]
    assert user.monthly_redemption_count == 0


async def _month_of_activity(session, make_account):
    user = await make_account(membership_type="silver", monthly_redemption_count=9)
    idle = await make_account(membership_type="silver", monthly_redemption_count=4)
    merchant = await make_account(user_type="merchant", membership_type="gold_business", monthly_deal_count=0)
    deals = [
        Deal(business_id=merchant.id, title=f"Deal {index}", status="active", created_at=_at(2))
        for index in range(3)
    ]
    deals.append(Deal(business_id=merchant.id, title="Waiting", status="pending", created_at=_at(5)))
    deals.append(Deal(business_id=merchant.id, title="Old", status="active", created_at=_at(20, month=5)))
    session.add_all(deals)
    await session.flush()
    session.add_all(
        [
            DealRedemption(deal_id=deals[0].id, user_id=user.id, status="approved", redeemed_at=_at(3)),
            DealRedemption(deal_id=deals[1].id, user_id=user.id, status="approved", redeemed_at=_at(10)),
            DealRedemption(deal_id=deals[2].id, user_id=user.id, status="approved", redeemed_at=_at(28, month=5)),
            DealRedemption(deal_id=deals[0].id, user_id=idle.id, status="pending"),
        ]
    )
    await session.flush()
    return user, idle, merchant


@pytest.mark.asyncio
async def test_recompute_rebuilds_counts_from_current_month(session, plans, make_account):
    user, idle, merchant = await _month_of_activity(session, make_account)
    counters = MonthlyCounterService(session)

    result = await counters.recompute_monthly_counts(date(2024, 6, 15))

    for account in (user, idle, merchant):
        await session.refresh(account)
    assert result == {"users": 1, "merchants": 1}
    assert user.monthly_redemption_count == 2
    assert idle.monthly_redemption_count == 0
    assert merchant.monthly_deal_count == 3


@pytest.mark.asyncio
async def test_monthly_statistics(session, plans, make_account):
    user, idle, merchant = await _month_of_activity(session, make_account)
    user.monthly_redemption_count = 10
    idle.monthly_redemption_count = 3
    merchant.monthly_deal_count = 2
    await session.flush()
    counters = MonthlyCounterService(session)

    stats = await counters.monthly_statistics(date(2024, 6, 15))

    assert stats.period == date(2024, 6, 1)
    assert stats.users.total_active_users == 2
    assert stats.users.total_redemptions == 13
    assert stats.users.avg_redemptions_per_user == 6.5
    assert stats.users.users_at_limit == 1
    assert stats.merchants.total_active_merchants == 1
    assert stats.merchants.merchants_at_limit == 1
    assert stats.deals.approved_this_month == 3
    assert stats.deals.pending_approval == 1
    assert stats.deals.redemptions_this_month == 2
