"""Monthly redemption / deal-post quotas and the renewal sweep."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.db.models.core import Account, Deal, DealRedemption
from loyalty.domain.models import (
    UNLIMITED,
    CounterKind,
    DealStatistics,
    MerchantStatistics,
    MonthlyStatistics,
    RenewalReport,
    UsageSnapshot,
    UserStatistics,
)
from loyalty.logging import logger
from loyalty.services.exceptions import LimitExceeded
from loyalty.services.notifications import (
    DEAL_LIMIT_REACHED,
    DEAL_LIMIT_RENEWED,
    REDEMPTION_LIMIT_REACHED,
    REDEMPTION_LIMIT_RENEWED,
    NotificationDispatcher,
)
from loyalty.services.plans import PlanCatalog, plan_limit
from loyalty.utils.datetime import local_today, month_bounds, month_start, next_month_start, utc_now

APPROVED_DEAL_STATUSES = ("active", "scheduled", "expired", "inactive")


@dataclass(frozen=True, slots=True)
class CounterSpec:
    account_type: str
    count_attr: str
    custom_attr: str
    reached_event: str
    renewed_event: str


COUNTERS: dict[CounterKind, CounterSpec] = {
    CounterKind.REDEMPTION: CounterSpec(
        account_type="user",
        count_attr="monthly_redemption_count",
        custom_attr="custom_redemption_limit",
        reached_event=REDEMPTION_LIMIT_REACHED,
        renewed_event=REDEMPTION_LIMIT_RENEWED,
    ),
    CounterKind.DEAL_POST: CounterSpec(
        account_type="merchant",
        count_attr="monthly_deal_count",
        custom_attr="custom_deal_limit",
        reached_event=DEAL_LIMIT_REACHED,
        renewed_event=DEAL_LIMIT_RENEWED,
    ),
}


def is_within_limit(used: int, limit: int) -> bool:
    return limit == UNLIMITED or used < limit


class MonthlyCounterService:
    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog | None = None,
        notifier: NotificationDispatcher | None = None,
        *,
        timezone: str = "UTC",
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.catalog = catalog or PlanCatalog(session, notifier)
        self.timezone = timezone

    def today(self) -> date:
        return local_today(self.timezone)

    async def effective_limit(self, account: Account, kind: CounterKind) -> int:
        """Custom override, else the plan default, else 0."""

        custom = getattr(account, COUNTERS[kind].custom_attr)
        if custom is not None:
            return custom
        limit = plan_limit(await self.catalog.resolve_account_plan(account), kind)
        return limit if limit is not None else 0

    async def usage(self, account: Account, kind: CounterKind) -> UsageSnapshot:
        plan = await self.catalog.resolve_account_plan(account)
        return UsageSnapshot(
            account_id=account.id,
            kind=kind,
            used=getattr(account, COUNTERS[kind].count_attr) or 0,
            limit=await self.effective_limit(account, kind),
            plan_key=plan.key if plan else None,
        )

    async def check_limit(self, account: Account, kind: CounterKind) -> UsageSnapshot:
        snapshot = await self.usage(account, kind)
        if not is_within_limit(snapshot.used, snapshot.limit):
            raise LimitExceeded(kind.value, snapshot.used, snapshot.limit)
        return snapshot

    async def record_usage(self, account: Account, kind: CounterKind) -> int:
        """Unconditional +1. Prefer :meth:`reserve` where the limit must hold."""

        column = getattr(Account, COUNTERS[kind].count_attr)
        await self._apply(account, kind, update(Account).where(Account.id == account.id), column + 1)
        value = getattr(account, COUNTERS[kind].count_attr)
        logger.info("usage_recorded", account_id=account.id, kind=kind.value, used=value)
        return value

    async def reserve(self, account: Account, kind: CounterKind) -> UsageSnapshot:
        """Take one unit of quota with a single conditional UPDATE."""

        spec = COUNTERS[kind]
        limit = await self.effective_limit(account, kind)
        column = getattr(Account, spec.count_attr)
        stmt = update(Account).where(Account.id == account.id)
        if limit != UNLIMITED:
            stmt = stmt.where(column < limit)
        updated = await self._apply(account, kind, stmt, column + 1)
        used = getattr(account, spec.count_attr)
        if not updated:
            logger.info("usage_limit_reached", account_id=account.id, kind=kind.value, used=used, limit=limit)
            self._publish_limit_reached(account, kind, limit)
            raise LimitExceeded(kind.value, used, limit)
        logger.info("usage_reserved", account_id=account.id, kind=kind.value, used=used, limit=limit)
        return UsageSnapshot(account_id=account.id, kind=kind, used=used, limit=limit)

    async def release(self, account: Account, kind: CounterKind) -> int:
        """Give back one unit, never going below zero."""

        column = getattr(Account, COUNTERS[kind].count_attr)
        stmt = update(Account).where(Account.id == account.id, column > 0)
        await self._apply(account, kind, stmt, column - 1)
        value = getattr(account, COUNTERS[kind].count_attr)
        logger.info("usage_released", account_id=account.id, kind=kind.value, used=value)
        return value

    async def renew_all(self, today: date | None = None) -> RenewalReport:
        """Reset counters of every active account not yet renewed this month."""

        today = today or self.today()
        period = month_start(today)
        report = RenewalReport(period=period)
        renewed_at = utc_now()
        for kind, spec in COUNTERS.items():
            stmt = (
                select(Account)
                .where(
                    Account.user_type == spec.account_type,
                    Account.status == "active",
                    or_(Account.last_renewal_date.is_(None), Account.last_renewal_date < period),
                )
                .order_by(Account.id)
            )
            accounts = list((await self.session.execute(stmt)).scalars())
            for account in accounts:
                setattr(account, spec.count_attr, 0)
                account.last_renewal_date = period
                account.last_renewed_at = renewed_at
            await self.session.flush()

            renewed = report.renewed_users if kind is CounterKind.REDEMPTION else report.renewed_merchants
            for account in accounts:
                renewed.append(account.id)
                await self._publish_renewed(account, kind, period)

        logger.info(
            "monthly_renewal_completed",
            period=period.isoformat(),
            users=len(report.renewed_users),
            merchants=len(report.renewed_merchants),
        )
        return report

    async def recompute_monthly_counts(self, today: date | None = None) -> dict[str, int]:
        """Rebuild counters from approved redemptions and deals of the current month."""

        start, end = month_bounds(today or self.today())
        redemption_rows = await self.session.execute(
            select(DealRedemption.user_id, func.count())
            .where(
                DealRedemption.status == "approved",
                DealRedemption.redeemed_at >= start,
                DealRedemption.redeemed_at < end,
            )
            .group_by(DealRedemption.user_id)
        )
        redemption_counts = dict(redemption_rows.all())
        deal_rows = await self.session.execute(
            select(Deal.business_id, func.count())
            .where(
                Deal.status.in_(APPROVED_DEAL_STATUSES),
                Deal.created_at >= start,
                Deal.created_at < end,
            )
            .group_by(Deal.business_id)
        )
        deal_counts = dict(deal_rows.all())

        await self.session.flush()
        await self.session.execute(
            update(Account).where(Account.user_type == "user").values(monthly_redemption_count=0)
        )
        await self.session.execute(
            update(Account).where(Account.user_type == "merchant").values(monthly_deal_count=0)
        )
        for user_id, count in redemption_counts.items():
            await self.session.execute(
                update(Account)
                .where(Account.id == user_id, Account.user_type == "user")
                .values(monthly_redemption_count=count)
            )
        for merchant_id, count in deal_counts.items():
            await self.session.execute(
                update(Account)
                .where(Account.id == merchant_id, Account.user_type == "merchant")
                .values(monthly_deal_count=count)
            )

        logger.info(
            "monthly_counts_recomputed",
            users=len(redemption_counts),
            merchants=len(deal_counts),
        )
        return {"users": len(redemption_counts), "merchants": len(deal_counts)}

    async def monthly_statistics(self, today: date | None = None) -> MonthlyStatistics:
        today = today or self.today()
        start, end = month_bounds(today)
        stats = MonthlyStatistics(period=month_start(today))

        users = await self._active_accounts("user")
        used = [account.monthly_redemption_count or 0 for account in users]
        at_limit = 0
        for account in users:
            limit = await self.effective_limit(account, CounterKind.REDEMPTION)
            if not is_within_limit(account.monthly_redemption_count or 0, limit):
                at_limit += 1
        stats.users = UserStatistics(
            total_active_users=len(users),
            total_redemptions=sum(used),
            avg_redemptions_per_user=round(sum(used) / len(users), 2) if users else 0.0,
            users_at_limit=at_limit,
        )

        merchants = await self._active_accounts("merchant")
        posted = [account.monthly_deal_count or 0 for account in merchants]
        at_limit = 0
        for account in merchants:
            limit = await self.effective_limit(account, CounterKind.DEAL_POST)
            if not is_within_limit(account.monthly_deal_count or 0, limit):
                at_limit += 1
        stats.merchants = MerchantStatistics(
            total_active_merchants=len(merchants),
            total_deals_posted=sum(posted),
            avg_deals_per_merchant=round(sum(posted) / len(merchants), 2) if merchants else 0.0,
            merchants_at_limit=at_limit,
        )

        in_month = (Deal.created_at >= start, Deal.created_at < end)
        approved = await self._count(Deal, Deal.status.in_(APPROVED_DEAL_STATUSES), *in_month)
        pending = await self._count(Deal, Deal.status == "pending", *in_month)
        redemptions = await self._count(
            DealRedemption,
            DealRedemption.status == "approved",
            DealRedemption.redeemed_at >= start,
            DealRedemption.redeemed_at < end,
        )
        stats.deals = DealStatistics(
            approved_this_month=approved,
            pending_approval=pending,
            redemptions_this_month=redemptions,
        )
        return stats

    # Internal helpers -------------------------------------------------

    async def _apply(self, account: Account, kind: CounterKind, stmt, value) -> bool:
        attr = COUNTERS[kind].count_attr
        await self.session.flush()
        result = await self.session.execute(
            stmt.values({attr: value}).execution_options(synchronize_session=False)
        )
        await self.session.refresh(account, attribute_names=[attr])
        return result.rowcount > 0

    async def _active_accounts(self, user_type: str) -> list[Account]:
        stmt = select(Account).where(Account.user_type == user_type, Account.status == "active")
        return list((await self.session.execute(stmt)).scalars())

    async def _count(self, model, *criteria) -> int:
        stmt = select(func.count()).select_from(model).where(*criteria)
        return (await self.session.execute(stmt)).scalar_one()

    def _publish_limit_reached(self, account: Account, kind: CounterKind, limit: int) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(
            COUNTERS[kind].reached_event,
            account.id,
            {
                "name": account.display_name,
                "currentLimit": limit,
                "resetDate": next_month_start(self.today()).isoformat(),
            },
        )

    async def _publish_renewed(self, account: Account, kind: CounterKind, period: date) -> None:
        if self.notifier is None:
            return
        plan = await self.catalog.resolve_account_plan(account)
        self.notifier.publish(
            COUNTERS[kind].renewed_event,
            account.id,
            {
                "name": account.display_name,
                "newLimit": await self.effective_limit(account, kind),
                "planName": plan.name if plan else None,
                "currentMonth": period.strftime("%B %Y"),
            },
        )


__all__ = ["COUNTERS", "CounterSpec", "MonthlyCounterService", "is_within_limit"]
