from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from pushsched.core.clock import Clock, canonical_now, to_canonical
from pushsched.core.errors import NotificationNotFoundError, NotificationStateError
from pushsched.domain.models import Notification, NotificationStatus
from pushsched.persistence.repos.notifications import create_notification, get_notification


logger = logging.getLogger(__name__)


def _validate_payload(payload: dict[str, Any]) -> dict[str, Any]:
    # Channels only need title/body; everything else rides along under data.
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    data = payload.get("data")
    if data is not None and not isinstance(data, dict):
        raise ValueError("payload.data must be an object")
    return dict(payload)


def _validate_recipient(recipient: str) -> str:
    normalized = (recipient or "").strip()
    if not normalized:
        raise ValueError("recipient must be non-empty")
    return normalized


async def schedule_notification(
    session: AsyncSession,
    *,
    recipient: str,
    payload: dict[str, Any],
    scheduled_time: datetime | None = None,
    user_id: str | None = None,
    clock: Clock = canonical_now,
) -> Notification:
    # Write due times through the same clock the dispatcher polls with, so comparisons never drift.
    due_at = to_canonical(scheduled_time) if scheduled_time is not None else clock()
    row = await create_notification(
        session,
        recipient=_validate_recipient(recipient),
        payload=_validate_payload(payload),
        scheduled_time=due_at,
        user_id=user_id,
    )
    await session.commit()
    logger.info("notification_scheduled id=%s scheduled_time=%s", row.id, due_at.isoformat())
    return row


async def update_scheduled_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    recipient: str | None = None,
    payload: dict[str, Any] | None = None,
    scheduled_time: datetime | None = None,
    clock: Clock = canonical_now,
) -> Notification:
    # Creators may only edit content while the dispatcher cannot yet select the row.
    row = await get_notification(session, notification_id)
    if row is None:
        raise NotificationNotFoundError(f"notification {notification_id} not found")
    if row.status != NotificationStatus.PENDING.value:
        raise NotificationStateError(f"notification {notification_id} is {row.status}")
    if to_canonical(row.scheduled_time) <= clock():
        raise NotificationStateError(f"notification {notification_id} is already due")
    if recipient is not None:
        row.recipient = _validate_recipient(recipient)
    if payload is not None:
        row.payload_json = _validate_payload(payload)
    if scheduled_time is not None:
        row.scheduled_time = to_canonical(scheduled_time)
    await session.commit()
    return row


__all__ = [
    "get_notification",
    "schedule_notification",
    "update_scheduled_notification",
]
