"""Plan catalog lookups, fuzzy membership resolution and plan assignment."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from loyalty.domain.models import CounterKind
from loyalty.services.exceptions import PlanNotFound, ServiceError
from loyalty.services.notifications import CUSTOM_LIMIT_ASSIGNED, NEW_PLAN_ASSIGNED
from loyalty.services.plans import PlanCatalog, match_plan, plan_limit


def _plan(key: str, name: str, priority: int = 1) -> SimpleNamespace:
    return SimpleNamespace(key=key, name=name, priority=priority)


def test_exact_key_beats_name_match():
    by_name = _plan("vip", "gold")
    by_key = _plan("gold", "Basic")
    assert match_plan("gold", [by_name, by_key]) is by_key


def test_name_match_is_case_insensitive_and_beats_prefix():
    named = _plan("gold_x", "Gold Plus")
    prefix = _plan("gold", "Gold")
    assert match_plan("GOLD PLUS", [prefix, named]) is named


def test_prefix_beats_substring():
    prefix = _plan("plat", "Plat")
    substring = _plan("num", "Num")
    assert match_plan("platinum", [substring, prefix]) is prefix


def test_prefix_prefers_longest_key():
    plans = [_plan("plat", "Plat", 2), _plan("platinum", "Platinum", 3)]
    assert match_plan("platinum_plus", plans).key == "platinum"


def test_substring_fallback():
    gold = _plan("gold", "Gold", 2)
    assert match_plan("premium gold member", [gold]) is gold


@pytest.mark.parametrize("candidate", [None, "", "   ", "diamond"])
def test_unmatched_candidates_return_none(candidate):
    assert match_plan(candidate, [_plan("gold", "Gold")]) is None


def test_plan_limit_by_kind():
    plan = SimpleNamespace(max_deal_redemptions=10, max_deals_per_month=2)
    assert plan_limit(plan, CounterKind.REDEMPTION) == 10
    assert plan_limit(plan, CounterKind.DEAL_POST) == 2
    assert plan_limit(None, CounterKind.REDEMPTION) is None


@pytest.mark.asyncio
async def test_linked_plan_wins_over_membership_strings(session, plans, make_account):
    account = await make_account(plan_id=plans["platinum"].id, membership_type="silver")
    catalog = PlanCatalog(session)

    plan = await catalog.resolve_account_plan(account)

    assert plan.key == "platinum"


@pytest.mark.asyncio
async def test_membership_type_then_legacy_membership(session, plans, make_account):
    catalog = PlanCatalog(session)
    typed = await make_account(membership_type="gold", membership="silver")
    legacy = await make_account(membership_type="unknown-tier", membership="Gold")

    assert (await catalog.resolve_account_plan(typed)).key == "gold"
    assert (await catalog.resolve_account_plan(legacy)).key == "gold"


@pytest.mark.asyncio
async def test_platinum_plus_membership_resolves_to_platinum(session, plans, make_account):
    account = await make_account(membership_type="platinum_plus")
    catalog = PlanCatalog(session)

    assert await catalog.priority_for(account) == plans["platinum"].priority


@pytest.mark.asyncio
async def test_unknown_membership_has_priority_zero(session, plans, make_account):
    account = await make_account(membership_type="diamond", membership=None)
    catalog = PlanCatalog(session)

    assert await catalog.resolve_account_plan(account) is None
    assert await catalog.priority_for(account) == 0


@pytest.mark.asyncio
async def test_fuzzy_resolution_ignores_inactive_and_other_type_plans(session, plans, make_account):
    plans["gold"].is_active = False
    await session.flush()
    user = await make_account(membership_type="gold")
    merchant = await make_account(user_type="merchant", membership_type="Silver Business")
    catalog = PlanCatalog(session)

    assert await catalog.resolve_account_plan(user) is None
    assert (await catalog.resolve_account_plan(merchant)).key == "silver_business"


@pytest.mark.asyncio
async def test_list_records_filters_by_type(session, plans):
    catalog = PlanCatalog(session)

    records = await catalog.list_records("merchant")

    assert [record.key for record in records] == ["gold_business", "silver_business", "basic"]
    assert all(record.type == "merchant" for record in records)
    assert (await catalog.get_record("platinum")).max_deal_redemptions == -1
    assert await catalog.get_record("missing") is None


@pytest.mark.asyncio
async def test_assign_plan_links_account_and_notifies(session, plans, make_account, notifier):
    account = await make_account(membership="silver")
    catalog = PlanCatalog(session, notifier)

    plan = await catalog.assign_plan(account, "gold")

    assert account.plan_id == plan.id
    assert account.membership_type == "gold"
    [event] = notifier.of_type(NEW_PLAN_ASSIGNED)
    assert event[1] == account.id
    assert event[2]["planName"] == "Gold"


@pytest.mark.asyncio
async def test_assign_plan_rejects_unknown_inactive_and_wrong_type(session, plans, make_account):
    plans["silver"].is_active = False
    await session.flush()
    user = await make_account()
    catalog = PlanCatalog(session)

    with pytest.raises(PlanNotFound):
        await catalog.assign_plan(user, "diamond")
    with pytest.raises(PlanNotFound):
        await catalog.assign_plan(user, "silver")
    with pytest.raises(PlanNotFound):
        await catalog.assign_plan(user, "gold_business")
    assert user.plan_id is None


@pytest.mark.asyncio
async def test_set_custom_limit(session, plans, make_account, notifier):
    account = await make_account()
    catalog = PlanCatalog(session, notifier)

    await catalog.set_custom_limit(account, CounterKind.REDEMPTION, 5)
    assert account.custom_redemption_limit == 5
    assert notifier.of_type(CUSTOM_LIMIT_ASSIGNED)[0][2]["newLimit"] == 5

    await catalog.set_custom_limit(account, CounterKind.REDEMPTION, None)
    assert account.custom_redemption_limit is None
    assert len(notifier.of_type(CUSTOM_LIMIT_ASSIGNED)) == 1

    with pytest.raises(ServiceError):
        await catalog.set_custom_limit(account, CounterKind.DEAL_POST, -2)


@pytest.mark.asyncio
async def test_backfill_links_resolvable_accounts(session, plans, make_account):
    resolvable = await make_account(membership="Platinum")
    unresolved = await make_account(membership="bronze")
    admin = await make_account(user_type="admin", membership="gold")
    catalog = PlanCatalog(session)

    report = await catalog.backfill_plan_links()

    assert report.linked == 1
    assert report.unresolved == [unresolved.id]
    assert resolvable.plan_id == plans["platinum"].id
    assert resolvable.membership_type == "platinum"
    assert admin.plan_id is None
