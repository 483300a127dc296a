"""Best-effort notification dispatch.

Services publish events onto an in-process queue and return immediately. A
single worker task hands each event to a :class:`NotificationSender` (the
email/WhatsApp gateway lives behind it) with retry. Events that still fail,
or that do not fit in the queue, are dead-lettered: logged, kept in a small
in-memory ring and optionally persisted to ``notification_dead_letters``.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import httpx

from loyalty.config import NotificationSettings
from loyalty.db.models.core import NotificationDeadLetter
from loyalty.db.session import Database
from loyalty.domain.models import DeliveryReceipt, NotificationEvent
from loyalty.logging import logger
from loyalty.utils.retry import retry_async

REDEMPTION_LIMIT_REACHED = "redemption_limit_reached"
REDEMPTION_LIMIT_RENEWED = "redemption_limit_renewed"
DEAL_LIMIT_REACHED = "deal_limit_reached"
DEAL_LIMIT_RENEWED = "deal_limit_renewed"
REDEMPTION_RESPONSE = "redemption_response"
NEW_REDEMPTION_REQUEST = "new_redemption_request"
DEAL_REQUEST_RESPONSE = "deal_request_response"
PLAN_EXPIRY_WARNING = "plan_expiry_warning"
NEW_PLAN_ASSIGNED = "new_plan_assigned"
CUSTOM_LIMIT_ASSIGNED = "custom_limit_assigned"


class NotificationDeliveryError(RuntimeError):
    """Raised when the gateway accepts the request but reports a failure."""


class NotificationSender(Protocol):
    async def send(
        self, event_type: str, account_id: int | None, payload: dict[str, Any]
    ) -> DeliveryReceipt: ...


DeadLetterSink = Callable[[NotificationEvent, str, int], Awaitable[None]]


class LoggingNotificationSender:
    """Sender used when no gateway is configured."""

    async def send(
        self, event_type: str, account_id: int | None, payload: dict[str, Any]
    ) -> DeliveryReceipt:
        message_id = uuid.uuid4().hex
        logger.info(
            "notification_logged",
            event_type=event_type,
            account_id=account_id,
            message_id=message_id,
            payload=payload,
        )
        return DeliveryReceipt(success=True, message_id=message_id)


class HttpNotificationSender:
    """POST events as JSON to the external email/WhatsApp gateway."""

    def __init__(self, http_client: httpx.AsyncClient, settings: NotificationSettings) -> None:
        if settings.gateway_url is None:
            raise ValueError("Notification gateway URL is not configured.")
        self._client = http_client
        self._settings = settings

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._settings.gateway_token
        if token:
            headers["Authorization"] = f"Bearer {token.get_secret_value()}"
        return headers

    async def send(
        self, event_type: str, account_id: int | None, payload: dict[str, Any]
    ) -> DeliveryReceipt:
        response = await self._client.post(
            str(self._settings.gateway_url),
            json={"eventType": event_type, "accountId": account_id, "payload": payload},
            headers=self._headers(),
            timeout=self._settings.request_timeout_seconds,
        )
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError:
            data = {}
        return DeliveryReceipt(
            success=bool(data.get("success", True)),
            message_id=data.get("messageId"),
        )


class DatabaseDeadLetterSink:
    """Persist dead letters using a short-lived session of their own."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def __call__(self, event: NotificationEvent, error: str, attempts: int) -> None:
        async with self._database.session() as session:
            session.add(
                NotificationDeadLetter(
                    event_type=event.event_type,
                    account_id=event.account_id,
                    payload=event.payload,
                    error=error[:2000],
                    attempts=attempts,
                )
            )


class NotificationDispatcher:
    def __init__(
        self,
        sender: NotificationSender,
        settings: NotificationSettings | None = None,
        *,
        dead_letter_sink: DeadLetterSink | None = None,
    ) -> None:
        self._sender = sender
        self._settings = settings or NotificationSettings()
        self._sink = dead_letter_sink
        self._queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(
            maxsize=self._settings.queue_size
        )
        self._worker: asyncio.Task | None = None
        self._dead_letters: deque[tuple[NotificationEvent, str]] = deque(
            maxlen=self._settings.dead_letter_buffer
        )
        self.delivered = 0
        self._held: list[NotificationEvent] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dead_letters(self) -> list[tuple[NotificationEvent, str]]:
        return list(self._dead_letters)

    def publish(
        self,
        event_type: str,
        account_id: int | None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Queue an event without waiting for delivery. Returns False if it was dropped.

        Inside :meth:`deferred` the event is held until the block exits cleanly.
        """

        event = NotificationEvent(event_type=event_type, account_id=account_id, payload=payload or {})
        if self._held is not None:
            self._held.append(event)
            return True
        return self._enqueue(event)

    @asynccontextmanager
    async def deferred(self) -> AsyncIterator["NotificationDispatcher"]:
        """Hold events published in the block; queue them on success, drop them on error.

        Wrap the unit of work whose commit the events describe, so a rollback
        never produces a notification. Nested blocks join the outer one.
        """

        if self._held is not None:
            yield self
            return

        held: list[NotificationEvent] = []
        self._held = held
        completed = False
        try:
            yield self
            completed = True
        finally:
            self._held = None
            if completed:
                for event in held:
                    self._enqueue(event)
            elif held:
                logger.warning(
                    "notifications_discarded",
                    count=len(held),
                    event_types=sorted({event.event_type for event in held}),
                )

    def _enqueue(self, event: NotificationEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._record_dead_letter(event, "notification queue full", 0)
            return False
        logger.debug("notification_queued", event_type=event.event_type, account_id=event.account_id)
        return True

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
        logger.info("notification_dispatcher_started", pending=self.pending)

    async def stop(self, *, drain: bool = True) -> None:
        if self._worker is None:
            return
        if drain and self.running:
            await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(
            "notification_dispatcher_stopped",
            delivered=self.delivered,
            dead_letters=len(self._dead_letters),
            pending=self.pending,
        )

    async def __aenter__(self) -> "NotificationDispatcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop(drain=True)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: NotificationEvent) -> None:
        attempts = 0

        async def _send() -> DeliveryReceipt:
            nonlocal attempts
            attempts += 1
            receipt = await self._sender.send(event.event_type, event.account_id, event.payload)
            if not receipt.success:
                raise NotificationDeliveryError(f"gateway rejected {event.event_type}")
            return receipt

        try:
            receipt = await retry_async(
                _send,
                max_attempts=self._settings.max_attempts,
                base_delay=self._settings.retry_base_delay,
                logger=logger,
                operation_name="notification_send",
            )
        except Exception as exc:
            await self._dead_letter(event, str(exc) or exc.__class__.__name__, attempts)
            return

        self.delivered += 1
        logger.info(
            "notification_sent",
            event_type=event.event_type,
            account_id=event.account_id,
            message_id=receipt.message_id,
            attempts=attempts,
        )

    def _record_dead_letter(self, event: NotificationEvent, error: str, attempts: int) -> None:
        self._dead_letters.append((event, error))
        logger.error(
            "notification_dead_lettered",
            event_type=event.event_type,
            account_id=event.account_id,
            attempts=attempts,
            error=error,
        )

    async def _dead_letter(self, event: NotificationEvent, error: str, attempts: int) -> None:
        self._record_dead_letter(event, error, attempts)
        if self._sink is None:
            return
        try:
            await self._sink(event, error, attempts)
        except Exception:
            logger.exception("notification_dead_letter_persist_failed", event_type=event.event_type)


def build_dispatcher(
    settings: NotificationSettings,
    *,
    http_client: httpx.AsyncClient | None = None,
    database: Database | None = None,
) -> NotificationDispatcher:
    """Pick the sender from configuration and wire the dead-letter sink."""

    sender: NotificationSender
    if settings.gateway_url is not None and http_client is not None:
        sender = HttpNotificationSender(http_client, settings)
    else:
        sender = LoggingNotificationSender()
    sink = DatabaseDeadLetterSink(database) if database and settings.persist_dead_letters else None
    return NotificationDispatcher(sender, settings, dead_letter_sink=sink)


__all__ = [
    "CUSTOM_LIMIT_ASSIGNED",
    "DEAL_LIMIT_REACHED",
    "DEAL_LIMIT_RENEWED",
    "DEAL_REQUEST_RESPONSE",
    "DatabaseDeadLetterSink",
    "HttpNotificationSender",
    "LoggingNotificationSender",
    "NEW_PLAN_ASSIGNED",
    "NEW_REDEMPTION_REQUEST",
    "NotificationDeliveryError",
    "NotificationDispatcher",
    "NotificationSender",
    "PLAN_EXPIRY_WARNING",
    "REDEMPTION_LIMIT_REACHED",
    "REDEMPTION_LIMIT_RENEWED",
    "REDEMPTION_RESPONSE",
    "build_dispatcher",
]
