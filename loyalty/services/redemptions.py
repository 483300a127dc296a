"""Deal redemption requests and their approval workflow."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.db.models.core import Account, Deal, DealRedemption
from loyalty.domain.models import CounterKind
from loyalty.logging import logger
from loyalty.services.access import AccessEvaluator
from loyalty.services.counters import MonthlyCounterService
from loyalty.services.exceptions import (
    AccessDenied,
    AccountNotFound,
    DealUnavailable,
    DuplicateRedemption,
    InvalidTransition,
    LimitExceeded,
)
from loyalty.services.notifications import (
    NEW_REDEMPTION_REQUEST,
    REDEMPTION_RESPONSE,
    NotificationDispatcher,
)
from loyalty.services.plans import PlanCatalog
from loyalty.utils.datetime import as_utc, utc_now

# Rows in these states hold a unit of the user's monthly quota.
QUOTA_HOLDING_STATUSES = {"approved", "redeemed"}


def counted_since_renewal(user: Account, redemption: DealRedemption) -> bool:
    """Whether the user's current counter still includes this approval.

    A renewal sweep zeroes the counter, so approvals stamped before the last
    sweep are no longer part of it.
    """

    redeemed_at = as_utc(redemption.redeemed_at)
    if redeemed_at is None:
        return False
    renewed_at = as_utc(user.last_renewed_at)
    if renewed_at is None and user.last_renewal_date is not None:
        day = user.last_renewal_date
        renewed_at = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return renewed_at is None or redeemed_at >= renewed_at


class RedemptionService:
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
        self.access = AccessEvaluator(self.catalog, default_priority)

    async def request(self, user: Account, deal_id: int) -> DealRedemption:
        deal = await self._get_deal(deal_id)
        self._ensure_open(deal)
        if deal.max_redemptions is not None and deal.redemption_count >= deal.max_redemptions:
            raise DealUnavailable(f"Deal {deal.id} has no redemptions left.")

        decision = await self.access.evaluate(user, deal)
        if not decision.allowed:
            logger.info(
                "redemption_access_denied",
                user_id=user.id,
                deal_id=deal.id,
                user_priority=decision.user_priority,
                required_priority=decision.required_priority,
            )
            raise AccessDenied(
                f"Plan priority {decision.user_priority} is below the required {decision.required_priority}."
            )

        # Legacy tables may hold several rows per pair.
        existing = await self.session.execute(
            select(DealRedemption.id)
            .where(
                DealRedemption.deal_id == deal.id,
                DealRedemption.user_id == user.id,
            )
            .limit(1)
        )
        if existing.first() is not None:
            raise DuplicateRedemption(f"User {user.id} already redeemed deal {deal.id}.")

        await self.counters.check_limit(user, CounterKind.REDEMPTION)

        redemption = DealRedemption(deal_id=deal.id, user_id=user.id, status="pending")
        self.session.add(redemption)
        await self.session.flush()
        logger.info("redemption_requested", redemption_id=redemption.id, user_id=user.id, deal_id=deal.id)
        if self.notifier is not None:
            self.notifier.publish(
                NEW_REDEMPTION_REQUEST,
                deal.business_id,
                {"redemptionId": redemption.id, "dealTitle": deal.title, "userName": user.full_name},
            )
        return redemption

    async def approve(self, redemption_id: int) -> DealRedemption:
        redemption = await self._get_redemption(redemption_id, lock=True)
        if redemption.status != "pending":
            raise InvalidTransition(f"Redemption {redemption.id} is {redemption.status}, not pending.")
        deal = await self._get_deal(redemption.deal_id)
        self._ensure_open(deal)
        user = await self._get_account(redemption.user_id)

        await self._take_deal_slot(deal)
        try:
            await self.counters.reserve(user, CounterKind.REDEMPTION)
        except LimitExceeded:
            await self._return_deal_slot(deal)
            raise

        redemption.status = "approved"
        redemption.redeemed_at = utc_now()
        redemption.rejection_reason = None
        await self.session.flush()
        logger.info("redemption_approved", redemption_id=redemption.id, user_id=user.id, deal_id=deal.id)
        self._notify_response(redemption, deal)
        return redemption

    async def reject(self, redemption_id: int, reason: str | None = None) -> DealRedemption:
        redemption = await self._get_redemption(redemption_id, lock=True)
        if redemption.status not in {"pending", *QUOTA_HOLDING_STATUSES}:
            raise InvalidTransition(f"Redemption {redemption.id} is {redemption.status} and cannot be rejected.")
        deal = await self._get_deal(redemption.deal_id)
        await self._give_back(redemption, deal)

        redemption.status = "rejected"
        redemption.rejection_reason = reason
        await self.session.flush()
        logger.info("redemption_rejected", redemption_id=redemption.id, reason=reason)
        self._notify_response(redemption, deal)
        return redemption

    async def cancel(self, redemption_id: int, user: Account) -> DealRedemption:
        redemption = await self._get_redemption(redemption_id, lock=True)
        if redemption.user_id != user.id:
            raise AccessDenied(f"Redemption {redemption.id} belongs to another user.")
        if redemption.status != "pending":
            raise InvalidTransition(f"Only pending redemptions can be canceled (got {redemption.status}).")
        redemption.status = "canceled"
        await self.session.flush()
        logger.info("redemption_canceled", redemption_id=redemption.id, user_id=user.id)
        return redemption

    # Internal helpers -------------------------------------------------

    def _ensure_open(self, deal: Deal) -> None:
        if deal.status != "active":
            raise DealUnavailable(f"Deal {deal.id} is not active.")
        expires = as_utc(deal.expiration_date)
        if expires is not None and expires <= utc_now():
            raise DealUnavailable(f"Deal {deal.id} has expired.")

    async def _take_deal_slot(self, deal: Deal) -> None:
        await self.session.flush()
        stmt = update(Deal).where(Deal.id == deal.id)
        if deal.max_redemptions is not None:
            stmt = stmt.where(Deal.redemption_count < deal.max_redemptions)
        result = await self.session.execute(
            stmt.values(redemption_count=Deal.redemption_count + 1).execution_options(
                synchronize_session=False
            )
        )
        await self.session.refresh(deal, attribute_names=["redemption_count"])
        if result.rowcount == 0:
            raise DealUnavailable(f"Deal {deal.id} has no redemptions left.")

    async def _return_deal_slot(self, deal: Deal) -> None:
        await self.session.flush()
        await self.session.execute(
            update(Deal)
            .where(Deal.id == deal.id, Deal.redemption_count > 0)
            .values(redemption_count=Deal.redemption_count - 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(deal, attribute_names=["redemption_count"])

    async def _give_back(self, redemption: DealRedemption, deal: Deal) -> None:
        if redemption.status not in QUOTA_HOLDING_STATUSES:
            return
        await self._return_deal_slot(deal)
        user = await self._get_account(redemption.user_id)
        if counted_since_renewal(user, redemption):
            await self.counters.release(user, CounterKind.REDEMPTION)

    def _notify_response(self, redemption: DealRedemption, deal: Deal) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(
            REDEMPTION_RESPONSE,
            redemption.user_id,
            {
                "redemptionId": redemption.id,
                "dealTitle": deal.title,
                "status": redemption.status,
                "rejectionReason": redemption.rejection_reason,
            },
        )

    async def _get_deal(self, deal_id: int) -> Deal:
        deal = await self.session.get(Deal, deal_id)
        if deal is None:
            raise DealUnavailable(f"Deal {deal_id} not found.")
        return deal

    async def _get_account(self, account_id: int) -> Account:
        account = await self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found.")
        return account

    async def _get_redemption(self, redemption_id: int, *, lock: bool = False) -> DealRedemption:
        stmt = select(DealRedemption).where(DealRedemption.id == redemption_id)
        if lock:
            stmt = stmt.with_for_update()
        redemption = (await self.session.execute(stmt)).scalar_one_or_none()
        if redemption is None:
            raise InvalidTransition(f"Redemption {redemption_id} not found.")
        return redemption


__all__ = ["RedemptionService"]
