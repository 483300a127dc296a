"""Merchant deal submission, admin review and time-based status changes."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.db.models.core import Account, Deal
from loyalty.domain.models import CounterKind, PriorityConsolidationReport
from loyalty.logging import logger
from loyalty.services.counters import MonthlyCounterService
from loyalty.services.exceptions import AccessDenied, DealUnavailable, InvalidTransition
from loyalty.services.notifications import DEAL_REQUEST_RESPONSE, NotificationDispatcher
from loyalty.services.plans import PlanCatalog
from loyalty.utils.datetime import as_utc, utc_now


class DealService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        catalog: PlanCatalog | None = None,
        counters: MonthlyCounterService | None = None,
        notifier: NotificationDispatcher | None = None,
        default_priority: int = 1,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.catalog = catalog or PlanCatalog(session, notifier)
        self.counters = counters or MonthlyCounterService(session, self.catalog, notifier)
        self.default_priority = default_priority

    async def submit(
        self,
        merchant: Account,
        *,
        title: str,
        description: str | None = None,
        category: str | None = None,
        required_plan_priority: int | None = None,
        start_date: datetime | None = None,
        expiration_date: datetime | None = None,
        max_redemptions: int | None = None,
    ) -> Deal:
        if merchant.user_type != "merchant" or merchant.status != "active":
            raise AccessDenied(f"Account {merchant.id} is not an active merchant.")
        if not title.strip():
            raise DealUnavailable("Deal title must not be empty.")
        await self.counters.check_limit(merchant, CounterKind.DEAL_POST)

        priority = required_plan_priority if required_plan_priority is not None else self.default_priority
        deal = Deal(
            business_id=merchant.id,
            title=title.strip(),
            description=description,
            category=category,
            required_plan_priority=priority,
            min_plan_priority=priority,
            status="pending",
            start_date=start_date,
            expiration_date=expiration_date,
            max_redemptions=max_redemptions,
            redemption_count=0,
        )
        self.session.add(deal)
        await self.session.flush()
        logger.info("deal_submitted", deal_id=deal.id, merchant_id=merchant.id, priority=priority)
        return deal

    async def approve(self, deal_id: int, required_plan_priority: int | None = None) -> Deal:
        deal = await self._get_deal(deal_id, lock=True)
        if deal.status != "pending":
            raise InvalidTransition(f"Deal {deal.id} is {deal.status}, not pending.")
        merchant = await self.session.get(Account, deal.business_id)
        if merchant is None:
            raise DealUnavailable(f"Merchant {deal.business_id} for deal {deal.id} no longer exists.")

        await self.counters.reserve(merchant, CounterKind.DEAL_POST)

        if required_plan_priority is not None:
            deal.required_plan_priority = required_plan_priority
        if deal.required_plan_priority is None:
            deal.required_plan_priority = self.default_priority
        deal.min_plan_priority = deal.required_plan_priority
        start = as_utc(deal.start_date)
        deal.status = "scheduled" if start is not None and start > utc_now() else "active"
        deal.rejection_reason = None
        await self.session.flush()
        logger.info("deal_approved", deal_id=deal.id, status=deal.status, priority=deal.required_plan_priority)
        self._notify(deal)
        return deal

    async def reject(self, deal_id: int, reason: str | None = None) -> Deal:
        deal = await self._get_deal(deal_id, lock=True)
        if deal.status != "pending":
            raise InvalidTransition(f"Deal {deal.id} is {deal.status}, not pending.")
        deal.status = "rejected"
        deal.rejection_reason = reason
        await self.session.flush()
        logger.info("deal_rejected", deal_id=deal.id, reason=reason)
        self._notify(deal)
        return deal

    async def refresh_statuses(self, now: datetime | None = None) -> dict[str, int]:
        """Activate scheduled deals whose start passed and expire lapsed ones."""

        now = now or utc_now()
        stmt = select(Deal).where(Deal.status.in_(("active", "scheduled")))
        activated = expired = 0
        for deal in list((await self.session.execute(stmt)).scalars()):
            expires = as_utc(deal.expiration_date)
            start = as_utc(deal.start_date)
            if expires is not None and expires <= now:
                deal.status = "expired"
                expired += 1
            elif deal.status == "scheduled" and (start is None or start <= now):
                deal.status = "active"
                activated += 1
        await self.session.flush()
        logger.info("deal_statuses_refreshed", activated=activated, expired=expired)
        return {"activated": activated, "expired": expired}

    async def consolidate_priority_fields(self) -> PriorityConsolidationReport:
        """Make ``required_plan_priority`` the single source of truth.

        Rows where both fields are set but disagree keep
        ``required_plan_priority`` and are reported for review.
        """

        stmt = (
            select(Deal)
            .where(
                or_(
                    Deal.required_plan_priority.is_(None),
                    Deal.min_plan_priority.is_(None),
                    Deal.required_plan_priority != Deal.min_plan_priority,
                )
            )
            .order_by(Deal.id)
        )
        report = PriorityConsolidationReport()
        for deal in list((await self.session.execute(stmt)).scalars()):
            required, legacy = deal.required_plan_priority, deal.min_plan_priority
            if required is not None and legacy is not None and required != legacy:
                report.conflicts.append(
                    {"deal_id": deal.id, "required_plan_priority": required, "min_plan_priority": legacy}
                )
                logger.warning(
                    "deal_priority_conflict",
                    deal_id=deal.id,
                    required_plan_priority=required,
                    min_plan_priority=legacy,
                )
            if required is None:
                required = legacy if legacy is not None else self.default_priority
            deal.required_plan_priority = required
            deal.min_plan_priority = required
            report.updated += 1
        await self.session.flush()
        logger.info("deal_priorities_consolidated", updated=report.updated, conflicts=len(report.conflicts))
        return report

    def _notify(self, deal: Deal) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(
            DEAL_REQUEST_RESPONSE,
            deal.business_id,
            {
                "dealId": deal.id,
                "dealTitle": deal.title,
                "status": deal.status,
                "rejectionReason": deal.rejection_reason,
            },
        )

    async def _get_deal(self, deal_id: int, *, lock: bool = False) -> Deal:
        stmt = select(Deal).where(Deal.id == deal_id)
        if lock:
            stmt = stmt.with_for_update()
        deal = (await self.session.execute(stmt)).scalar_one_or_none()
        if deal is None:
            raise DealUnavailable(f"Deal {deal_id} not found.")
        return deal


__all__ = ["DealService"]
