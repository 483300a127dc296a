"""Shared pytest fixtures for database-backed service tests."""

from __future__ import annotations

import itertools

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from loyalty.db.base import Base
from loyalty.db.models.core import Account, Plan


class _AsyncSessionWrapper:
    def __init__(self, sync_session) -> None:
        self._sync = sync_session

    async def execute(self, *args, **kwargs):
        return self._sync.execute(*args, **kwargs)

    async def get(self, *args, **kwargs):
        return self._sync.get(*args, **kwargs)

    def add(self, obj) -> None:
        self._sync.add(obj)

    def add_all(self, objs) -> None:
        self._sync.add_all(objs)

    async def flush(self) -> None:
        self._sync.flush()

    async def refresh(self, obj, attribute_names=None) -> None:
        self._sync.refresh(obj, attribute_names=attribute_names)

    async def commit(self) -> None:
        self._sync.commit()

    async def rollback(self) -> None:
        self._sync.rollback()

    async def close(self) -> None:
        self._sync.close()


class RecordingNotifier:
    """Stands in for NotificationDispatcher and keeps every published event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, int | None, dict]] = []

    def publish(self, event_type, account_id, payload=None) -> bool:
        self.events.append((event_type, account_id, payload or {}))
        return True

    def of_type(self, event_type: str) -> list[tuple[str, int | None, dict]]:
        return [event for event in self.events if event[0] == event_type]


@pytest_asyncio.fixture
async def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sync_session = SessionLocal()
    try:
        yield _AsyncSessionWrapper(sync_session)
    finally:
        sync_session.close()
        engine.dispose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def plans(session) -> dict[str, Plan]:
    """A small catalog covering both plan types and an unlimited tier."""

    rows = [
        Plan(key="basic", name="Basic", type="merchant", priority=1, max_deals_per_month=0),
        Plan(key="silver_business", name="Silver Business", type="merchant", priority=2, max_deals_per_month=1),
        Plan(key="gold_business", name="Gold Business", type="merchant", priority=3, max_deals_per_month=2),
        Plan(key="silver", name="Silver", type="user", priority=1, max_deal_redemptions=10),
        Plan(key="gold", name="Gold", type="user", priority=2, max_deal_redemptions=25),
        Plan(key="platinum", name="Platinum", type="user", priority=3, max_deal_redemptions=-1),
    ]
    session.add_all(rows)
    await session.flush()
    return {plan.key: plan for plan in rows}


@pytest.fixture
def make_account(session):
    counter = itertools.count(1)

    async def factory(**overrides) -> Account:
        index = next(counter)
        values = {
            "email": f"account{index}@example.com",
            "full_name": f"Ama Mensah{index}",
            "user_type": "user",
            "status": "active",
        }
        values.update(overrides)
        account = Account(**values)
        session.add(account)
        await session.flush()
        return account

    return factory
