from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import os
import socket
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pushsched.core.clock import Clock, canonical_now
from pushsched.core.config import get_settings
from pushsched.core.errors import DatabaseError
from pushsched.domain.models import Notification, NotificationStatus
from pushsched.persistence.repos.notifications import (
    claim_notification,
    find_due,
    mark_sent,
    record_failure,
    release_claim,
    release_stale_claims,
)
from pushsched.providers.delivery.base import DeliveryChannel, DeliveryResult
from pushsched.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]
Heartbeat = Callable[[], Awaitable[Any]]

_SENT = "sent"
_FAILED = "failed"
_SKIPPED = "skipped"


@dataclass(slots=True)
class TickResult:
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    released_claims: int = 0
    # True when the stop signal arrived before every due notification was attempted.
    interrupted: bool = False


def default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class NotificationDispatcher:
    """Periodic delivery of due notifications.

    Each tick opens its own session from ``session_factory``, loads every
    ``Pending`` notification whose ``scheduled_time`` has passed according to
    ``clock``, and hands them to ``channel`` one at a time. A failing
    notification is logged and left ``Pending`` (unless bounded retry is
    configured) so the next tick retries it; it never stops the rest of the
    batch. Store errors abort only the current tick.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        channel: DeliveryChannel,
        clock: Clock = canonical_now,
        interval_s: float | None = None,
        max_attempts: int | None = None,
        claim_enabled: bool | None = None,
        claim_ttl_s: int | None = None,
        instance_id: str | None = None,
        heartbeat: Heartbeat | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._channel = channel
        self._clock = clock
        self._interval_s = float(interval_s if interval_s is not None else settings.dispatch_interval_s)
        if self._interval_s <= 0:
            raise ValueError("dispatch interval must be positive")
        self._max_attempts = max(0, int(max_attempts if max_attempts is not None else settings.dispatch_max_attempts))
        self._claim_enabled = bool(settings.dispatch_claim_enabled if claim_enabled is None else claim_enabled)
        self._claim_ttl_s = max(1, int(claim_ttl_s if claim_ttl_s is not None else settings.dispatch_claim_ttl_s))
        self._instance_id = instance_id or settings.dispatch_instance_id or default_instance_id()
        self._heartbeat = heartbeat

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def instance_id(self) -> str:
        return self._instance_id

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(
            "dispatcher_started instance=%s interval_s=%s at=%s",
            self._instance_id,
            self._interval_s,
            self._clock().isoformat(),
        )
        try:
            while not stop_event.is_set():
                try:
                    await self.run_tick(stop_event=stop_event)
                except Exception:  # noqa: BLE001 - only cancellation may end the loop
                    increment_counter("dispatch_tick_failures_total")
                    logger.exception("dispatcher_tick_failed instance=%s", self._instance_id)
                await self._sleep(stop_event)
        finally:
            logger.info("dispatcher_stopped instance=%s", self._instance_id)

    async def _sleep(self, stop_event: asyncio.Event) -> None:
        # Wake early on shutdown so the loop exits within one interval at most.
        if stop_event.is_set():
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self._interval_s)
        except asyncio.TimeoutError:
            pass

    async def run_tick(self, *, stop_event: asyncio.Event | None = None) -> TickResult:
        result = TickResult()
        now = self._clock()
        increment_counter("dispatch_ticks_total")
        logger.debug("dispatcher_tick_start now=%s", now.isoformat())

        try:
            await self._process_due(result, now=now, stop_event=stop_event)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"notification store unavailable: {type(exc).__name__}") from exc

        await self._publish_heartbeat()
        return result

    async def _process_due(
        self,
        result: TickResult,
        *,
        now: datetime,
        stop_event: asyncio.Event | None,
    ) -> None:
        async with self._session_factory() as session:
            # Rows from find_due are read after each per-item commit, whatever the factory's default.
            session.sync_session.expire_on_commit = False
            if self._claim_enabled:
                cutoff = now - timedelta(seconds=self._claim_ttl_s)
                result.released_claims = await release_stale_claims(session, cutoff=cutoff)
                await session.commit()
                if result.released_claims:
                    logger.warning("dispatcher_released_stale_claims count=%d", result.released_claims)

            due = await find_due(session, now=now)
            result.due = len(due)
            if not due:
                logger.debug("dispatcher_no_pending_notifications now=%s", now.isoformat())
            else:
                logger.info("dispatcher_found_pending count=%d", len(due))
                for index, notification in enumerate(due):
                    if stop_event is not None and stop_event.is_set():
                        result.interrupted = True
                        logger.info("dispatcher_tick_interrupted remaining=%d", len(due) - index)
                        break
                    outcome = await self._dispatch_one(session, notification)
                    if outcome == _SENT:
                        result.sent += 1
                    elif outcome == _FAILED:
                        result.failed += 1
                    else:
                        result.skipped += 1

    async def _dispatch_one(self, session: AsyncSession, notification: Notification) -> str:
        notification_id = notification.id
        logger.info(
            "notification_processing id=%s scheduled_time=%s",
            notification_id,
            notification.scheduled_time,
        )
        if self._claim_enabled:
            claimed = await claim_notification(
                session,
                notification_id,
                claimed_by=self._instance_id,
                claimed_at=self._clock(),
            )
            await session.commit()
            if not claimed:
                logger.info("notification_claimed_elsewhere id=%s", notification_id)
                return _SKIPPED

        try:
            outcome = await self._channel.send(notification)
        except Exception as exc:  # noqa: BLE001 - one bad notification must not stall the batch
            logger.exception("notification_delivery_failed id=%s", notification_id)
            outcome = DeliveryResult.failed(f"{type(exc).__name__}: {exc}")
        else:
            if not outcome.success:
                logger.warning("notification_delivery_failed id=%s reason=%s", notification_id, outcome.reason)

        if outcome.success:
            # Commit per item so a later store error in this tick cannot undo a delivered mark.
            if not await mark_sent(session, notification_id, sent_at=self._clock()):
                logger.warning("notification_missing_after_send id=%s", notification_id)
            await session.commit()
            increment_counter("notifications_sent_total")
            logger.info("notification_sent id=%s", notification_id)
            return _SENT

        increment_counter("notification_delivery_failures_total")
        await self._handle_failure(session, notification_id, outcome.reason or "unknown")
        return _FAILED

    async def _handle_failure(self, session: AsyncSession, notification_id: str, reason: str) -> None:
        if self._max_attempts > 0:
            status = await record_failure(
                session,
                notification_id,
                reason=reason,
                max_attempts=self._max_attempts,
            )
            await session.commit()
            if status == NotificationStatus.FAILED.value:
                logger.error(
                    "notification_failed_permanently id=%s max_attempts=%d",
                    notification_id,
                    self._max_attempts,
                )
            return
        if self._claim_enabled:
            # Hand the row back so this or another instance retries it next tick.
            await release_claim(session, notification_id, claimed_by=self._instance_id)
            await session.commit()

    async def _publish_heartbeat(self) -> None:
        if self._heartbeat is None:
            return
        try:
            await self._heartbeat()
        except Exception:  # noqa: BLE001 - heartbeat loss must not stop delivery
            logger.warning("dispatcher_heartbeat_failed instance=%s", self._instance_id, exc_info=True)
