"""Plan catalog lookups, plan assignment and legacy membership resolution."""

from __future__ import annotations

from typing import Callable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.db.models.core import Account, Plan
from loyalty.domain.models import UNLIMITED, CounterKind, PlanBackfillReport, PlanRecord
from loyalty.logging import logger
from loyalty.services.exceptions import PlanNotFound, ServiceError
from loyalty.services.notifications import (
    CUSTOM_LIMIT_ASSIGNED,
    NEW_PLAN_ASSIGNED,
    NotificationDispatcher,
)

ACCOUNT_PLAN_TYPES = {"user": "user", "merchant": "merchant"}


def _exact_key(value: str) -> Callable[[Plan], bool]:
    return lambda plan: plan.key == value


def _name_ignore_case(value: str) -> Callable[[Plan], bool]:
    return lambda plan: plan.name.lower() == value


def _key_prefix(value: str) -> Callable[[Plan], bool]:
    return lambda plan: bool(plan.key) and value.startswith(plan.key.lower())


def _substring(value: str) -> Callable[[Plan], bool]:
    return lambda plan: (bool(plan.key) and plan.key.lower() in value) or (
        bool(plan.name) and plan.name.lower() in value
    )


def match_plan(candidate: str | None, plans: Sequence[Plan]) -> Plan | None:
    """Resolve a free-text membership string against the catalog.

    Passes run in order (exact key, case-insensitive name, key prefix,
    substring of key or name) and the first pass with any hit wins. Several
    hits inside one pass go to the longest key, then the highest priority,
    so ``platinum_plus`` prefers a ``platinum_plus`` plan over ``platinum``
    and ``platinum`` over ``plat``.
    """

    if not candidate or not candidate.strip():
        return None
    raw = candidate.strip()
    lowered = raw.lower()
    passes = (_exact_key(raw), _name_ignore_case(lowered), _key_prefix(lowered), _substring(lowered))
    for predicate in passes:
        hits = [plan for plan in plans if predicate(plan)]
        if hits:
            return max(hits, key=lambda plan: (len(plan.key), plan.priority))
    return None


def plan_limit(plan: Plan | None, kind: CounterKind) -> int | None:
    if plan is None:
        return None
    if kind is CounterKind.REDEMPTION:
        return plan.max_deal_redemptions
    return plan.max_deals_per_month


class PlanCatalog:
    def __init__(
        self,
        session: AsyncSession,
        notifier: NotificationDispatcher | None = None,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self._plans: dict[str | None, list[Plan]] = {}

    async def get_by_key(self, key: str) -> Plan | None:
        stmt = select(Plan).where(Plan.key == key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_record(self, key: str) -> PlanRecord | None:
        plan = await self.get_by_key(key)
        return PlanRecord.model_validate(plan) if plan else None

    async def list_plans(
        self, plan_type: str | None = None, *, include_inactive: bool = False
    ) -> list[Plan]:
        if not include_inactive and plan_type in self._plans:
            return self._plans[plan_type]
        stmt = select(Plan)
        if plan_type is not None:
            stmt = stmt.where(Plan.type == plan_type)
        if not include_inactive:
            stmt = stmt.where(Plan.is_active.is_(True))
        stmt = stmt.order_by(Plan.type, Plan.sort_order, Plan.priority.desc())
        plans = list((await self.session.execute(stmt)).scalars())
        if not include_inactive:
            self._plans[plan_type] = plans
        return plans

    async def list_records(self, plan_type: str | None = None) -> list[PlanRecord]:
        return [PlanRecord.model_validate(plan) for plan in await self.list_plans(plan_type)]

    async def resolve_account_plan(self, account: Account) -> Plan | None:
        """Linked plan first, then ``membership_type``, then the legacy ``membership`` tier."""

        if account.plan_id is not None:
            plan = await self.session.get(Plan, account.plan_id)
            if plan is not None:
                return plan

        candidates = await self.list_plans(ACCOUNT_PLAN_TYPES.get(account.user_type))
        for value in (account.membership_type, account.membership):
            plan = match_plan(value, candidates)
            if plan is not None:
                return plan

        logger.warning(
            "plan_not_resolved",
            account_id=account.id,
            membership_type=account.membership_type,
            membership=account.membership,
        )
        return None

    async def priority_for(self, account: Account) -> int:
        """Plan priority of ``account``; 0 when no plan can be resolved."""

        plan = await self.resolve_account_plan(account)
        return plan.priority if plan else 0

    async def assign_plan(self, account: Account, plan_key: str) -> Plan:
        plan = await self.get_by_key(plan_key)
        if plan is None or not plan.is_active:
            raise PlanNotFound(f"Plan '{plan_key}' does not exist or is inactive.")
        expected_type = ACCOUNT_PLAN_TYPES.get(account.user_type)
        if expected_type is not None and plan.type != expected_type:
            raise PlanNotFound(
                f"Plan '{plan_key}' is a {plan.type} plan and cannot be assigned to a {account.user_type}."
            )

        account.plan_id = plan.id
        account.membership_type = plan.key
        await self.session.flush()
        logger.info("plan_assigned", account_id=account.id, plan_key=plan.key)
        if self.notifier is not None:
            self.notifier.publish(
                NEW_PLAN_ASSIGNED,
                account.id,
                {
                    "name": account.display_name,
                    "planName": plan.name,
                    "planKey": plan.key,
                    "priority": plan.priority,
                },
            )
        return plan

    async def set_custom_limit(self, account: Account, kind: CounterKind, limit: int | None) -> None:
        """Set or clear (``None``) the admin override for one counter."""

        if limit is not None and limit < UNLIMITED:
            raise ServiceError(f"Custom limit must be -1 (unlimited) or greater, got {limit}.")
        if kind is CounterKind.REDEMPTION:
            account.custom_redemption_limit = limit
        else:
            account.custom_deal_limit = limit
        await self.session.flush()
        logger.info("custom_limit_assigned", account_id=account.id, kind=kind.value, limit=limit)
        if self.notifier is not None and limit is not None:
            self.notifier.publish(
                CUSTOM_LIMIT_ASSIGNED,
                account.id,
                {"name": account.display_name, "kind": kind.value, "newLimit": limit},
            )

    async def backfill_plan_links(self) -> PlanBackfillReport:
        """Link accounts that only carry a free-text membership to a catalog plan."""

        stmt = select(Account).where(
            Account.plan_id.is_(None),
            Account.user_type.in_(tuple(ACCOUNT_PLAN_TYPES)),
        )
        report = PlanBackfillReport()
        for account in list((await self.session.execute(stmt)).scalars()):
            plan = await self.resolve_account_plan(account)
            if plan is None:
                report.unresolved.append(account.id)
                continue
            account.plan_id = plan.id
            account.membership_type = plan.key
            report.linked += 1
        await self.session.flush()
        logger.info("plan_backfill_completed", linked=report.linked, unresolved=len(report.unresolved))
        return report


__all__ = ["PlanCatalog", "match_plan", "plan_limit"]
