"""Command-line entrypoint for scheduled and admin-triggered jobs.

Usage:
    loyalty renew                 # cron: 1 0 1 * *
    loyalty expire-deals          # cron: every few minutes
    loyalty expiry-warnings       # cron: 0 9 * * *
    loyalty recompute | stats | seed-plans | sync-priorities | backfill-plans
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import date
from typing import Any, Awaitable, Callable, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.config import LoyaltySettings, get_settings
from loyalty.db.session import Database
from loyalty.logging import bind_job, configure_logging, logger
from loyalty.services.counters import MonthlyCounterService
from loyalty.services.deals import DealService
from loyalty.services.expiry import PlanExpiryService
from loyalty.services.notifications import NotificationDispatcher, build_dispatcher
from loyalty.services.plans import PlanCatalog
from loyalty.services.seeds import ensure_default_plans
from loyalty.utils.datetime import local_today

Command = Callable[
    [AsyncSession, NotificationDispatcher, LoyaltySettings, argparse.Namespace],
    Awaitable[dict[str, Any]],
]


def _today(settings: LoyaltySettings, args: argparse.Namespace) -> date:
    return getattr(args, "date", None) or local_today(settings.renewal.timezone)


async def renew(session, dispatcher, settings, args) -> dict[str, Any]:
    counters = MonthlyCounterService(session, notifier=dispatcher, timezone=settings.renewal.timezone)
    report = await counters.renew_all(_today(settings, args))
    return report.model_dump(mode="json")


async def recompute(session, dispatcher, settings, args) -> dict[str, Any]:
    counters = MonthlyCounterService(session, notifier=dispatcher, timezone=settings.renewal.timezone)
    return await counters.recompute_monthly_counts(_today(settings, args))


async def stats(session, dispatcher, settings, args) -> dict[str, Any]:
    counters = MonthlyCounterService(session, timezone=settings.renewal.timezone)
    result = await counters.monthly_statistics(_today(settings, args))
    return result.model_dump(mode="json")


async def expire_deals(session, dispatcher, settings, args) -> dict[str, Any]:
    service = DealService(
        session, notifier=dispatcher, default_priority=settings.renewal.default_deal_priority
    )
    return await service.refresh_statuses()


async def expiry_warnings(session, dispatcher, settings, args) -> dict[str, Any]:
    service = PlanExpiryService(session, dispatcher, renewal_url=f"{settings.frontend_url}/plans")
    sent = await service.send_expiry_warnings(
        _today(settings, args), settings.renewal.expiry_warning_days
    )
    return {"sent": sent}


async def sync_priorities(session, dispatcher, settings, args) -> dict[str, Any]:
    service = DealService(session, default_priority=settings.renewal.default_deal_priority)
    report = await service.consolidate_priority_fields()
    return report.model_dump(mode="json")


async def backfill_plans(session, dispatcher, settings, args) -> dict[str, Any]:
    report = await PlanCatalog(session).backfill_plan_links()
    return report.model_dump(mode="json")


async def seed_plans(session, dispatcher, settings, args) -> dict[str, Any]:
    created = await ensure_default_plans(session, currency=settings.default_currency)
    return {"created": created}


COMMANDS: dict[str, Command] = {
    "renew": renew,
    "recompute": recompute,
    "stats": stats,
    "expire-deals": expire_deals,
    "expiry-warnings": expiry_warnings,
    "sync-priorities": sync_priorities,
    "backfill-plans": backfill_plans,
    "seed-plans": seed_plans,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loyalty", description="Membership plan and quota jobs")
    sub = parser.add_subparsers(dest="command", required=True)
    for name in COMMANDS:
        command = sub.add_parser(name)
        if name in {"renew", "recompute", "stats", "expiry-warnings"}:
            command.add_argument(
                "--date",
                type=date.fromisoformat,
                default=None,
                help="Run as if today were this ISO date (defaults to today in the configured timezone)",
            )
    return parser


async def main(argv: Sequence[str] | None = None) -> dict[str, Any]:
    args = build_parser().parse_args(argv)
    configure_logging()
    settings = get_settings()
    bind_job(args.command, environment=settings.environment)
    database = Database(settings=settings)
    handler = COMMANDS[args.command]

    try:
        async with httpx.AsyncClient() as http_client:
            dispatcher = build_dispatcher(
                settings.notifications, http_client=http_client, database=database
            )
            async with dispatcher:
                # Events leave the buffer only once the session has committed.
                async with dispatcher.deferred():
                    async with database.session() as session:
                        result = await handler(session, dispatcher, settings, args)
    finally:
        await database.dispose()

    logger.info("command_completed", command=args.command, result=result)
    return result


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
