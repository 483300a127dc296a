"""SQLAlchemy models mirroring the MySQL schema."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loyalty.db.base import Base
from loyalty.utils.datetime import utc_now


class Plan(Base):
    __tablename__ = "plans"
    __table_args__ = (UniqueConstraint("key", name="uq_plans_key"),)

    key: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), default="GHS", nullable=False)
    billing_cycle: Mapped[str] = mapped_column(
        Enum("monthly", "yearly", "lifetime", name="plan_billing_cycle"),
        default="monthly",
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(SmallInteger, default=1, nullable=False)
    # -1 means unlimited, NULL means "not configured" (treated as 0).
    max_deal_redemptions: Mapped[int | None] = mapped_column(Integer)
    max_deals_per_month: Mapped[int | None] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(
        Enum("user", "merchant", name="plan_type"), default="user", nullable=False
    )
    is_active: Mapped[bool] = mapped_column(default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    accounts: Mapped[list["Account"]] = relationship(back_populates="plan")


class Account(Base):
    """Users and merchants share one table, discriminated by ``user_type``."""

    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    email: Mapped[str] = mapped_column(String(191), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(191))
    business_name: Mapped[str | None] = mapped_column(String(191))
    phone: Mapped[str | None] = mapped_column(String(32))
    user_type: Mapped[str] = mapped_column(
        Enum("user", "merchant", "admin", name="user_type"), default="user", nullable=False
    )
    status: Mapped[str] = mapped_column(
        Enum("active", "pending", "suspended", "rejected", "expired", name="user_status"),
        default="pending",
        nullable=False,
    )
    membership: Mapped[str | None] = mapped_column(String(32))
    membership_type: Mapped[str | None] = mapped_column(String(64))
    plan_id: Mapped[int | None] = mapped_column(ForeignKey("plans.id", ondelete="SET NULL"))
    custom_redemption_limit: Mapped[int | None] = mapped_column(Integer)
    custom_deal_limit: Mapped[int | None] = mapped_column(Integer)
    monthly_redemption_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_deal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_renewal_date: Mapped[date | None] = mapped_column(Date)
    # When the last renewal sweep actually reset the counters.
    last_renewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    validation_date: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    plan: Mapped[Plan | None] = relationship(back_populates="accounts")
    deals: Mapped[list["Deal"]] = relationship(back_populates="business")
    redemptions: Mapped[list["DealRedemption"]] = relationship(back_populates="user")

    @property
    def display_name(self) -> str:
        if self.user_type == "merchant" and self.business_name:
            return self.business_name
        return (self.full_name or "").split(" ")[0] or "Member"


class Deal(Base):
    __tablename__ = "deals"

    business_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String(191), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(64))
    required_plan_priority: Mapped[int | None] = mapped_column(SmallInteger)
    # Legacy duplicate of required_plan_priority; only read by consolidation.
    min_plan_priority: Mapped[int | None] = mapped_column(SmallInteger)
    status: Mapped[str] = mapped_column(
        Enum(
            "pending",
            "active",
            "inactive",
            "expired",
            "scheduled",
            "rejected",
            name="deal_status",
        ),
        default="pending",
        nullable=False,
    )
    start_date: Mapped[datetime | None] = mapped_column(DateTime)
    expiration_date: Mapped[datetime | None] = mapped_column(DateTime)
    max_redemptions: Mapped[int | None] = mapped_column(Integer)
    redemption_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    business: Mapped[Account] = relationship(back_populates="deals")
    redemptions: Mapped[list["DealRedemption"]] = relationship(back_populates="deal")


class DealRedemption(Base):
    __tablename__ = "deal_redemptions"
    __table_args__ = (UniqueConstraint("deal_id", "user_id", name="uq_deal_redemptions_deal_user"),)

    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id", ondelete="CASCADE"))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    status: Mapped[str] = mapped_column(
        Enum(
            "pending",
            "approved",
            "rejected",
            "redeemed",
            "canceled",
            "expired",
            name="redemption_status",
        ),
        default="pending",
        nullable=False,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    deal: Mapped[Deal] = relationship(back_populates="redemptions")
    user: Mapped[Account] = relationship(back_populates="redemptions")


class NotificationDeadLetter(Base):
    __tablename__ = "notification_dead_letters"

    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[int | None] = mapped_column(Integer)
    payload: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


__all__ = [
    "Account",
    "Deal",
    "DealRedemption",
    "NotificationDeadLetter",
    "Plan",
]
