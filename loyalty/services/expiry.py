"""Daily plan-expiry warnings."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.db.models.core import Account
from loyalty.logging import logger
from loyalty.services.notifications import PLAN_EXPIRY_WARNING, NotificationDispatcher
from loyalty.services.plans import PlanCatalog

DEFAULT_WARNING_DAYS = (7, 3, 1)


class PlanExpiryService:
    def __init__(
        self,
        session: AsyncSession,
        notifier: NotificationDispatcher,
        *,
        catalog: PlanCatalog | None = None,
        renewal_url: str | None = None,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.catalog = catalog or PlanCatalog(session, notifier)
        self.renewal_url = renewal_url

    async def accounts_expiring_on(self, day: date) -> list[Account]:
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        stmt = (
            select(Account)
            .where(
                Account.status == "active",
                Account.user_type.in_(("user", "merchant")),
                Account.validation_date >= start,
                Account.validation_date < start + timedelta(days=1),
            )
            .order_by(Account.id)
        )
        return list((await self.session.execute(stmt)).scalars())

    async def send_expiry_warnings(
        self, today: date, days: Iterable[int] = DEFAULT_WARNING_DAYS
    ) -> int:
        sent = 0
        for days_left in sorted(set(days), reverse=True):
            for account in await self.accounts_expiring_on(today + timedelta(days=days_left)):
                plan = await self.catalog.resolve_account_plan(account)
                self.notifier.publish(
                    PLAN_EXPIRY_WARNING,
                    account.id,
                    {
                        "name": account.display_name,
                        "planName": plan.name if plan else None,
                        "expiryDate": account.validation_date.date().isoformat(),
                        "daysLeft": days_left,
                        "renewalUrl": self.renewal_url,
                    },
                )
                sent += 1
        logger.info("plan_expiry_warnings_sent", count=sent, today=today.isoformat())
        return sent


__all__ = ["DEFAULT_WARNING_DAYS", "PlanExpiryService"]
